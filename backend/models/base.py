import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import Enum
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def generate_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # Stored timestamps are naive UTC; SQLite drops tzinfo on round-trip.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def enum_type(enum_cls: type[PyEnum]) -> Enum:
    """Persist an enum by value (e.g. "active") as a plain VARCHAR."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=16,
        values_callable=lambda members: [m.value for m in members],
    )
