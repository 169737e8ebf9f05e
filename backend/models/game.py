from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from .base import Base, enum_type, generate_id, utcnow


class LibraryStatus(str, Enum):
    NOT_PLAYED = "not_played"
    PLAYING = "playing"
    COMPLETED = "completed"
    FAVORITE = "favorite"


class Game(Base):
    __tablename__ = "games"

    id = Column(String(36), primary_key=True, default=generate_id)
    title = Column(String(200), nullable=False, index=True)
    slug = Column(String(200), unique=True, nullable=False)
    system = Column(String(40), nullable=False, index=True)
    year = Column(Integer, nullable=True)
    genre = Column(String(80), nullable=True)
    player_count = Column(Integer, default=1, nullable=False)
    emulator = Column(String(60), nullable=False, default="retroarch")
    emulator_core = Column(String(60), nullable=True)
    cover_art_url = Column(String(500), nullable=True)
    description = Column(Text, nullable=True)
    play_count = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class LibraryEntry(Base):
    """Per-user play statistics for a game, fed by finalized session presence."""

    __tablename__ = "user_game_library"

    user_id = Column(String(36), ForeignKey("user_profiles.id"), primary_key=True)
    game_id = Column(String(36), ForeignKey("games.id"), primary_key=True)
    status = Column(enum_type(LibraryStatus), default=LibraryStatus.NOT_PLAYED, nullable=False)
    play_time_seconds = Column(Integer, default=0, nullable=False)
    last_played_at = Column(DateTime, nullable=True)
    added_at = Column(DateTime, default=utcnow, nullable=False)
