"""Builds the process-wide service graph once per app; routes reach it through app.state."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from app.config import Settings
from app.store import Store
from services.catalog import GameCatalog
from services.chat_log import ChatLog
from services.fanout import RealtimeFanout
from services.identity import IdentityResolver
from services.presence import MemoryPresenceBackend, PresenceBackend, PresenceTracker, RedisPresenceBackend
from services.provisioner import Provisioner
from services.session_registry import SessionRegistry
from services.tokens import JwtTokenValidator


@dataclass
class Services:
    settings: Settings
    store: Store
    catalog: GameCatalog
    identity: IdentityResolver
    chat_log: ChatLog
    fanout: RealtimeFanout
    presence: PresenceTracker
    registry: SessionRegistry
    started_at: float = field(default_factory=time.monotonic)

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self.started_at


def build_services(
    settings: Settings,
    *,
    provisioner: Provisioner | None = None,
    presence_backend: PresenceBackend | None = None,
) -> Services:
    store = Store(settings)
    chat_log = ChatLog(store, max_length=settings.chat_max_length)
    fanout = RealtimeFanout(chat_log)

    if presence_backend is None:
        if settings.redis_url:
            presence_backend = RedisPresenceBackend.from_url(
                settings.redis_url, socket_timeout=settings.db_timeout_seconds
            )
        else:
            presence_backend = MemoryPresenceBackend()
    presence = PresenceTracker(
        presence_backend,
        ttl_seconds=settings.presence_ttl_seconds,
        refresh_seconds=settings.presence_refresh_seconds,
        on_event=fanout.publish_global,
    )

    validator = JwtTokenValidator(
        settings.auth_jwt_secret,
        algorithm=settings.auth_jwt_algorithm,
        audience=settings.auth_jwt_audience,
    )
    return Services(
        settings=settings,
        store=store,
        catalog=GameCatalog(store),
        identity=IdentityResolver(store, validator),
        chat_log=chat_log,
        fanout=fanout,
        presence=presence,
        registry=SessionRegistry(
            store,
            fanout,
            provisioner,
            join_code_attempts=settings.join_code_max_attempts,
            list_limit=settings.session_list_limit,
        ),
    )
