from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)

from .base import Base, enum_type, generate_id, utcnow


class SessionStatus(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    ENDING = "ending"
    ENDED = "ended"
    ERROR = "error"


class SessionKind(str, Enum):
    SINGLE = "single"
    MULTIPLAYER = "multiplayer"
    SPECTATE = "spectate"


class VideoQuality(str, Enum):
    HD = "720p"
    FULL_HD = "1080p"
    QHD = "1440p"


class ParticipantRole(str, Enum):
    PLAYER = "player"
    SPECTATOR = "spectator"
    MODERATOR = "moderator"


# Forward-only lifecycle. ERROR is reachable from every non-terminal state.
SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.STARTING: frozenset({SessionStatus.ACTIVE, SessionStatus.ERROR}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.ENDING, SessionStatus.ERROR}),
    SessionStatus.ENDING: frozenset({SessionStatus.ENDED, SessionStatus.ERROR}),
    SessionStatus.ENDED: frozenset(),
    SessionStatus.ERROR: frozenset(),
}
TERMINAL_STATUSES = frozenset({SessionStatus.ENDED, SessionStatus.ERROR})
LISTED_STATUSES = (SessionStatus.STARTING, SessionStatus.ACTIVE)


class GameSession(Base):
    __tablename__ = "game_sessions"

    id = Column(String(36), primary_key=True, default=generate_id)
    game_id = Column(String(36), ForeignKey("games.id"), nullable=False)
    created_by = Column(String(36), ForeignKey("user_profiles.id"), nullable=False, index=True)
    join_code = Column(String(6), unique=True, nullable=True)
    status = Column(enum_type(SessionStatus), default=SessionStatus.STARTING, nullable=False, index=True)
    kind = Column(enum_type(SessionKind), default=SessionKind.SINGLE, nullable=False)
    is_private = Column(Boolean, default=False, nullable=False)
    max_players = Column(Integer, default=1, nullable=False)
    current_players = Column(Integer, default=0, nullable=False)
    spectator_count = Column(Integer, default=0, nullable=False)
    video_quality = Column(enum_type(VideoQuality), default=VideoQuality.FULL_HD, nullable=False)
    fps = Column(Integer, default=60, nullable=False)
    started_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    ended_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, default=utcnow, nullable=False)
    duration_seconds = Column(Integer, nullable=True)
    last_message_seq = Column(Integer, default=0, nullable=False)
    error_reason = Column(String(255), nullable=True)

    def can_transition(self, target: SessionStatus) -> bool:
        return target in SESSION_TRANSITIONS[SessionStatus(self.status)]

    @property
    def is_terminal(self) -> bool:
        return SessionStatus(self.status) in TERMINAL_STATUSES


class Participant(Base):
    """Membership of a user in a session; ``left_at is None`` means currently present."""

    __tablename__ = "session_participants"

    session_id = Column(String(36), ForeignKey("game_sessions.id"), primary_key=True)
    user_id = Column(String(36), ForeignKey("user_profiles.id"), primary_key=True, index=True)
    role = Column(enum_type(ParticipantRole), default=ParticipantRole.PLAYER, nullable=False)
    is_host = Column(Boolean, default=False, nullable=False)
    joined_at = Column(DateTime, default=utcnow, nullable=False)
    left_at = Column(DateTime, nullable=True)
    total_duration_seconds = Column(Integer, default=0, nullable=False)

    @property
    def is_present(self) -> bool:
        return self.left_at is None

    def finalize(self, now: datetime) -> int:
        """Close the current presence window and return its length in seconds."""
        elapsed = max(0, int((now - self.joined_at).total_seconds()))
        self.left_at = now
        self.total_duration_seconds = (self.total_duration_seconds or 0) + elapsed
        return elapsed


class SessionHistory(Base):
    """Write-once per-participant summary recorded when a session reaches a terminal state."""

    __tablename__ = "session_history"
    __table_args__ = (
        Index("ix_session_history_user_ended", "user_id", "ended_at"),
        Index("ix_session_history_game_ended", "game_id", "ended_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    session_id = Column(String(36), ForeignKey("game_sessions.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("user_profiles.id"), nullable=False)
    game_id = Column(String(36), ForeignKey("games.id"), nullable=False)
    role = Column(enum_type(ParticipantRole), nullable=False)
    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    total_players = Column(Integer, default=1, nullable=False)
