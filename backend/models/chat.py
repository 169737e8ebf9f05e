from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint

from .base import Base, enum_type, generate_id, utcnow


class MessageType(str, Enum):
    CHAT = "chat"
    SYSTEM = "system"
    GAME_EVENT = "game_event"


class ChatMessage(Base):
    __tablename__ = "session_chat"
    __table_args__ = (
        UniqueConstraint("session_id", "seq", name="uq_session_chat_seq"),
        Index("ix_session_chat_session_created", "session_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    session_id = Column(String(36), ForeignKey("game_sessions.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("user_profiles.id"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)            # 1-based, gap-free per session
    message = Column(Text, nullable=False)
    type = Column(enum_type(MessageType), default=MessageType.CHAT, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
