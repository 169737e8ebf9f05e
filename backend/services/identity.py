from __future__ import annotations

import hashlib
import logging
import re
import secrets

from sqlalchemy import select

from app.store import Store
from models import UserProfile, utcnow
from services.errors import ConflictError, InvalidError, NotFoundError
from services.tokens import JwtTokenValidator

logger = logging.getLogger(__name__)

MAX_RESOLVE_ATTEMPTS = 4
_USERNAME_UNSAFE = re.compile(r"[^a-z0-9_]+")


class IdentityResolver:
    """Maps an external identity to exactly one internal UserProfile, creating it on first sight."""

    def __init__(self, store: Store, validator: JwtTokenValidator) -> None:
        self._store = store
        self._validator = validator

    def authenticate(self, token: str) -> UserProfile:
        claims = self._validator.validate(token)
        return self.resolve(
            claims.external_id, username=claims.username, display_name=claims.display_name
        )

    def resolve(
        self,
        external_id: str,
        *,
        username: str | None = None,
        display_name: str | None = None,
    ) -> UserProfile:
        external_id = (external_id or "").strip()
        if not external_id:
            raise InvalidError("external_id is required")

        for attempt in range(MAX_RESOLVE_ATTEMPTS):
            existing = self._find_by_external_id(external_id)
            if existing is not None:
                return existing

            candidate = _username_candidate(external_id, username, attempt)
            try:
                with self._store.transaction() as db:
                    profile = UserProfile(
                        external_id=external_id,
                        username=candidate,
                        display_name=display_name or username or candidate,
                        last_seen_at=utcnow(),
                    )
                    db.add(profile)
            except ConflictError:
                # Either a concurrent first contact won (re-read finds it) or the username is taken.
                logger.info(
                    "[identity] Create conflict external_id=%s username=%s attempt=%d",
                    external_id,
                    candidate,
                    attempt + 1,
                )
                continue
            logger.info("[identity] Created profile id=%s username=%s", profile.id, profile.username)
            return profile

        existing = self._find_by_external_id(external_id)
        if existing is not None:
            return existing
        raise ConflictError("Could not create a profile", external_id=external_id)

    def get(self, user_id: str) -> UserProfile:
        with self._store.read() as db:
            profile = db.get(UserProfile, user_id)
        if profile is None:
            raise NotFoundError("User not found", user_id=user_id)
        return profile

    def touch(self, user_id: str, *, online: bool) -> None:
        with self._store.transaction() as db:
            profile = db.get(UserProfile, user_id)
            if profile is None:
                raise NotFoundError("User not found", user_id=user_id)
            profile.is_online = online
            profile.last_seen_at = utcnow()

    def _find_by_external_id(self, external_id: str) -> UserProfile | None:
        with self._store.read() as db:
            return db.execute(
                select(UserProfile).where(UserProfile.external_id == external_id)
            ).scalar_one_or_none()


def _username_candidate(external_id: str, hint: str | None, attempt: int) -> str:
    base = _USERNAME_UNSAFE.sub("_", (hint or "").strip().lower()).strip("_")[:40]
    if not base:
        base = "player_" + hashlib.sha1(external_id.encode("utf-8")).hexdigest()[:8]
    if attempt == 0:
        return base
    return f"{base}_{secrets.randbelow(10_000):04d}"
