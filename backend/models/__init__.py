from .base import Base, generate_id, utcnow
from .chat import ChatMessage, MessageType
from .game import Game, LibraryEntry, LibraryStatus
from .session import (
    LISTED_STATUSES,
    SESSION_TRANSITIONS,
    TERMINAL_STATUSES,
    GameSession,
    Participant,
    ParticipantRole,
    SessionHistory,
    SessionKind,
    SessionStatus,
    VideoQuality,
)
from .user import UserProfile

__all__ = [
    "Base",
    "generate_id",
    "utcnow",
    "UserProfile",
    "Game",
    "LibraryEntry",
    "LibraryStatus",
    "GameSession",
    "Participant",
    "SessionHistory",
    "SessionStatus",
    "SessionKind",
    "VideoQuality",
    "ParticipantRole",
    "SESSION_TRANSITIONS",
    "TERMINAL_STATUSES",
    "LISTED_STATUSES",
    "ChatMessage",
    "MessageType",
]
