"""
Online presence.

A user is online while at least one of their connections, on any instance,
keeps refreshing a TTL'd entry. Each instance owns its own entry per user, so
one instance dropping its last connection never hides a user still connected
elsewhere. Entries that stop being refreshed (crashed client, dead instance)
expire on their own after ``ttl_seconds``.

Transitions are published on a shared channel tagged with the publishing
instance; every tracker listens and forwards the events of other instances
to its local sink.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import suppress
from typing import Any, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from services.errors import TransientError

logger = logging.getLogger(__name__)

EventSink = Callable[[dict[str, Any]], Awaitable[Any]]

RESUBSCRIBE_DELAY_SECONDS = 1.0


class PresenceBackend(Protocol):
    async def refresh(self, user_id: str, instance_id: str, expires_at: float, now: float) -> bool:
        """Extend this instance's entry; True if the user had no live entry anywhere."""

    async def remove(self, user_id: str, instance_id: str, now: float) -> bool:
        """Drop this instance's entry; True if that left the user with no live entry."""

    async def members(self, now: float) -> list[str]: ...

    async def publish(self, event: dict[str, Any]) -> None: ...

    def listen(self) -> AsyncIterator[dict[str, Any]]: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


class MemoryPresenceBackend:
    """In-process backend. Trackers sharing one instance behave like instances sharing a cache."""

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, float]] = {}
        self._subscribers: set[asyncio.Queue[dict[str, Any]]] = set()

    def _live(self, user_id: str, now: float) -> dict[str, float]:
        entries = self._entries.get(user_id, {})
        for instance_id in [i for i, exp in entries.items() if exp <= now]:
            entries.pop(instance_id, None)
        if not entries:
            self._entries.pop(user_id, None)
        return entries

    async def refresh(self, user_id: str, instance_id: str, expires_at: float, now: float) -> bool:
        was_online = bool(self._live(user_id, now))
        self._entries.setdefault(user_id, {})[instance_id] = expires_at
        return not was_online

    async def remove(self, user_id: str, instance_id: str, now: float) -> bool:
        entries = self._live(user_id, now)
        if not entries:
            return False
        entries.pop(instance_id, None)
        if entries:
            return False
        self._entries.pop(user_id, None)
        return True

    async def members(self, now: float) -> list[str]:
        return sorted(u for u in list(self._entries) if self._live(u, now))

    async def publish(self, event: dict[str, Any]) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(dict(event))

    async def listen(self) -> AsyncIterator[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        self._entries.clear()


class RedisPresenceBackend:
    """
    Shared backend.

    - ``platium:presence:user:{id}`` is a sorted set of instance ids scored by expiry.
    - ``platium:presence:online`` holds one member per user scored by their latest
      expiry, which keeps listing online users a single range query.
    - Transitions go out on ``platium:presence:events``.
    """

    KEY = "platium:presence:online"
    USER_KEY = "platium:presence:user:{user_id}"
    CHANNEL = "platium:presence:events"

    def __init__(self, client: Redis, *, poll_seconds: float = 1.0) -> None:
        self._client = client
        self._poll_seconds = poll_seconds

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 5.0) -> "RedisPresenceBackend":
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    def _user_key(self, user_id: str) -> str:
        return self.USER_KEY.format(user_id=user_id)

    async def refresh(self, user_id: str, instance_id: str, expires_at: float, now: float) -> bool:
        key = self._user_key(user_id)
        try:
            await self._client.zremrangebyscore(key, "-inf", now)
            live_before = await self._client.zcard(key)
            await self._client.zadd(key, {instance_id: expires_at})
            await self._client.expireat(key, int(expires_at) + 1)
            await self._client.zadd(self.KEY, {user_id: expires_at}, gt=True)
        except RedisError as exc:
            raise TransientError("Presence cache unavailable") from exc
        return live_before == 0

    async def remove(self, user_id: str, instance_id: str, now: float) -> bool:
        key = self._user_key(user_id)
        try:
            await self._client.zremrangebyscore(key, "-inf", now)
            live_before = await self._client.zcard(key)
            await self._client.zrem(key, instance_id)
            latest = await self._client.zrange(key, -1, -1, withscores=True)
            if latest:
                await self._client.zadd(self.KEY, {user_id: float(latest[0][1])})
            else:
                await self._client.zrem(self.KEY, user_id)
        except RedisError as exc:
            raise TransientError("Presence cache unavailable") from exc
        return live_before > 0 and not latest

    async def members(self, now: float) -> list[str]:
        try:
            await self._client.zremrangebyscore(self.KEY, "-inf", now)
            members = await self._client.zrangebyscore(self.KEY, now, "+inf")
        except RedisError as exc:
            raise TransientError("Presence cache unavailable") from exc
        return sorted(members)

    async def publish(self, event: dict[str, Any]) -> None:
        try:
            await self._client.publish(self.CHANNEL, json.dumps(event))
        except RedisError as exc:
            raise TransientError("Presence cache unavailable") from exc

    async def listen(self) -> AsyncIterator[dict[str, Any]]:
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(self.CHANNEL)
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=self._poll_seconds)
                if message is None or message.get("type") != "message":
                    continue
                try:
                    event = json.loads(message["data"])
                except ValueError:
                    logger.warning("[presence] Dropping malformed event on %s", self.CHANNEL)
                    continue
                yield event
        except RedisError as exc:
            raise TransientError("Presence channel unavailable") from exc
        finally:
            with suppress(RedisError):
                await pubsub.unsubscribe(self.CHANNEL)
            with suppress(RedisError):
                await pubsub.aclose()

    async def ping(self) -> None:
        await self._client.ping()

    async def close(self) -> None:
        await self._client.aclose()


class PresenceTracker:
    def __init__(
        self,
        backend: PresenceBackend,
        *,
        ttl_seconds: int = 60,
        refresh_seconds: int = 20,
        on_event: EventSink | None = None,
        clock: Callable[[], float] = time.time,
        instance_id: str | None = None,
    ) -> None:
        self._backend = backend
        self._ttl = ttl_seconds
        self._refresh_interval = refresh_seconds
        self._on_event = on_event
        self._clock = clock
        self.instance_id = instance_id or secrets.token_hex(6)
        # Live connections per user on this instance.
        self._local: dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def ping(self) -> None:
        """Fail fast (raise) if the backing cache is unreachable."""
        await self._backend.ping()

    async def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._refresh_loop(), name="presence-refresh"),
            asyncio.create_task(self._listen_loop(), name="presence-listen"),
        ]
        logger.info(
            "[presence] Started instance=%s ttl=%ss refresh=%ss", self.instance_id, self._ttl, self._refresh_interval
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        await self._backend.close()
        logger.info("[presence] Stopped instance=%s", self.instance_id)

    async def mark_online(self, user_id: str) -> bool:
        """Register one more connection for the user; True if the user just came online."""
        async with self._lock:
            self._local[user_id] = self._local.get(user_id, 0) + 1
        return await self.heartbeat(user_id)

    async def mark_offline(self, user_id: str) -> bool:
        """Release one connection; the user goes offline when no instance holds a live entry."""
        async with self._lock:
            remaining = self._local.get(user_id, 0) - 1
            if remaining > 0:
                self._local[user_id] = remaining
                return False
            self._local.pop(user_id, None)
        went_offline = await self._backend.remove(user_id, self.instance_id, self._clock())
        if went_offline:
            logger.info("[presence] user_offline user=%s", user_id)
            await self._emit({"type": "user_offline", "user_id": user_id})
        return went_offline

    async def local_connections(self, user_id: str) -> int:
        async with self._lock:
            return self._local.get(user_id, 0)

    async def heartbeat(self, user_id: str) -> bool:
        """Refresh this instance's entry; announces the user again if it had lapsed everywhere."""
        now = self._clock()
        came_online = await self._backend.refresh(user_id, self.instance_id, now + self._ttl, now)
        if came_online:
            logger.info("[presence] user_online user=%s", user_id)
            await self._emit({"type": "user_online", "user_id": user_id})
        return came_online

    async def list_online(self) -> list[str]:
        return await self._backend.members(self._clock())

    async def _emit(self, event: dict[str, Any]) -> None:
        await self._backend.publish({**event, "instance_id": self.instance_id})
        if self._on_event is not None:
            await self._on_event(event)

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_interval)
            async with self._lock:
                users = list(self._local)
            for user_id in users:
                try:
                    await self.heartbeat(user_id)
                except TransientError as exc:
                    # Entry may lapse; the next tick or the client's own heartbeat restores it.
                    logger.warning("[presence] Refresh failed user=%s: %s", user_id, exc)

    async def _listen_loop(self) -> None:
        while True:
            try:
                async for event in self._backend.listen():
                    if event.get("instance_id") == self.instance_id:
                        continue
                    event.pop("instance_id", None)
                    if self._on_event is not None:
                        await self._on_event(event)
            except TransientError as exc:
                logger.warning("[presence] Event channel lost, resubscribing: %s", exc)
            await asyncio.sleep(RESUBSCRIBE_DELAY_SECONDS)
