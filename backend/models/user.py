from sqlalchemy import Boolean, Column, DateTime, String

from .base import Base, generate_id, utcnow


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id = Column(String(36), primary_key=True, default=generate_id)
    external_id = Column(String(128), unique=True, index=True, nullable=False)
    username = Column(String(50), unique=True, index=True, nullable=False)
    display_name = Column(String(120), nullable=True)
    avatar_url = Column(String(500), nullable=True)
    is_online = Column(Boolean, default=False, nullable=False, index=True)
    last_seen_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
