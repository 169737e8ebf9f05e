from __future__ import annotations

import asyncio
import logging
import secrets
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

from models import ChatMessage, MessageType
from services.chat_log import ChatLog, message_view
from services.errors import ForbiddenError, InvalidError

logger = logging.getLogger(__name__)

SIGNAL_KINDS = ("offer", "answer", "ice_candidate", "input")


def make_event(event_type: str, session_id: str | None = None, **data: Any) -> dict[str, Any]:
    event: dict[str, Any] = {"type": event_type}
    if session_id is not None:
        event["session_id"] = session_id
    event.update(data)
    event["ts"] = datetime.now(timezone.utc).isoformat()
    return event


class Connection:
    """
    One realtime client as seen by the fan-out.

    Events are queued on ``outbox``; the transport drains it. ``closed`` is set
    when the fan-out gives up on the client (queue overflow) or it disconnects.
    """

    def __init__(self, user_id: str, *, queue_size: int = 256, connection_id: str | None = None) -> None:
        self.id = connection_id or secrets.token_urlsafe(8)
        self.user_id = user_id
        self.outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.closed = asyncio.Event()

    def deliver(self, event: dict[str, Any]) -> bool:
        if self.closed.is_set():
            return False
        try:
            self.outbox.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        self.closed.set()

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, user_id={self.user_id!r})"


class RealtimeFanout:
    """
    Session-scoped broadcast groups over live connections.

    - Each session id maps to the set of connections currently in its group.
    - Chat goes through the ChatLog first and is broadcast while holding a
      per-session ordering lock, so every member sees messages in sequence order.
    - A member whose outbox is full is closed rather than skipped, so no member
      silently misses an event and keeps going.
    """

    def __init__(self, chat_log: ChatLog | None = None) -> None:
        self._chat_log = chat_log
        self._lock = asyncio.Lock()
        self._connections: dict[str, Connection] = {}
        self._groups: dict[str, set[Connection]] = defaultdict(set)
        self._memberships: dict[str, set[str]] = defaultdict(set)
        self._order_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def register(self, connection: Connection) -> None:
        async with self._lock:
            self._connections[connection.id] = connection
        logger.info("[fanout] Registered %r", connection)

    async def disconnect(self, connection: Connection) -> set[str]:
        """Forget the connection; returns the session ids whose groups it was in."""
        async with self._lock:
            self._connections.pop(connection.id, None)
            session_ids = self._memberships.pop(connection.id, set())
            for session_id in session_ids:
                self._discard_member(session_id, connection)
        connection.close()
        logger.info("[fanout] Disconnected %r groups=%s", connection, sorted(session_ids))
        return session_ids

    async def join_group(self, connection: Connection, session_id: str) -> None:
        async with self._lock:
            self._connections.setdefault(connection.id, connection)
            self._groups[session_id].add(connection)
            self._memberships[connection.id].add(session_id)

    async def leave_group(self, connection: Connection, session_id: str) -> bool:
        async with self._lock:
            memberships = self._memberships.get(connection.id)
            if not memberships or session_id not in memberships:
                return False
            memberships.discard(session_id)
            if not memberships:
                self._memberships.pop(connection.id, None)
            self._discard_member(session_id, connection)
        return True

    async def remove_user(self, session_id: str, user_id: str) -> int:
        """Drop every connection of the user from the group; returns how many were removed."""
        async with self._lock:
            targets = [c for c in self._groups.get(session_id, ()) if c.user_id == user_id]
            for connection in targets:
                memberships = self._memberships.get(connection.id)
                if memberships is not None:
                    memberships.discard(session_id)
                    if not memberships:
                        self._memberships.pop(connection.id, None)
                self._discard_member(session_id, connection)
        if targets:
            logger.info("[fanout] Removed user=%s from session=%s (%d connections)", user_id, session_id, len(targets))
        return len(targets)

    async def close_group(self, session_id: str) -> None:
        async with self._lock:
            members = self._groups.pop(session_id, set())
            for connection in members:
                memberships = self._memberships.get(connection.id)
                if memberships is not None:
                    memberships.discard(session_id)
                    if not memberships:
                        self._memberships.pop(connection.id, None)
            self._order_locks.pop(session_id, None)

    async def members(self, session_id: str) -> list[Connection]:
        async with self._lock:
            return list(self._groups.get(session_id, ()))

    async def is_member(self, connection: Connection, session_id: str) -> bool:
        async with self._lock:
            return session_id in self._memberships.get(connection.id, ())

    async def user_in_group(self, session_id: str, user_id: str, *, exclude: Connection | None = None) -> bool:
        async with self._lock:
            return any(
                c.user_id == user_id and c is not exclude for c in self._groups.get(session_id, ())
            )

    async def broadcast(
        self,
        session_id: str,
        event: dict[str, Any],
        *,
        exclude: Connection | None = None,
    ) -> int:
        async with self._lock:
            targets = [c for c in self._groups.get(session_id, ()) if c is not exclude]
        return await self._deliver(targets, event)

    async def relay(
        self,
        connection: Connection,
        session_id: str,
        kind: str,
        payload: Any,
        *,
        to_user_id: str | None = None,
    ) -> int:
        """Forward an opaque signaling/input payload to the other members of the group."""
        if kind not in SIGNAL_KINDS:
            raise InvalidError("Unknown signal kind", kind=kind)
        async with self._lock:
            if session_id not in self._memberships.get(connection.id, ()):
                raise ForbiddenError("Join the session room before signaling", session_id=session_id)
            targets = [
                c
                for c in self._groups.get(session_id, ())
                if c is not connection and (to_user_id is None or c.user_id == to_user_id)
            ]
        event = make_event(
            "signal",
            session_id,
            kind=kind,
            from_user_id=connection.user_id,
            payload=payload,
        )
        if to_user_id is not None:
            event["to_user_id"] = to_user_id
        return await self._deliver(targets, event)

    async def post_message(
        self,
        connection: Connection,
        session_id: str,
        text: str,
        message_type: MessageType | str = MessageType.CHAT,
    ) -> ChatMessage:
        if self._chat_log is None:
            raise RuntimeError("RealtimeFanout was built without a ChatLog")
        if not await self.is_member(connection, session_id):
            raise ForbiddenError("Join the session room before chatting", session_id=session_id)
        async with self._order_locks[session_id]:
            message = await self._chat_log.append(session_id, connection.user_id, text, message_type)
            await self.broadcast(session_id, make_event("new_message", session_id, message=message_view(message)))
        return message

    async def publish_global(self, event: dict[str, Any]) -> int:
        async with self._lock:
            targets = list(self._connections.values())
        return await self._deliver(targets, event)

    async def _deliver(self, targets: list[Connection], event: dict[str, Any]) -> int:
        delivered = 0
        for connection in targets:
            if connection.deliver(event):
                delivered += 1
            elif not connection.closed.is_set():
                # The transport sees `closed` and runs the normal disconnect path.
                logger.warning("[fanout] Dropping slow consumer %r (outbox full)", connection)
                connection.close()
        return delivered

    def _discard_member(self, session_id: str, connection: Connection) -> None:
        members = self._groups.get(session_id)
        if not members:
            return
        members.discard(connection)
        if not members:
            self._groups.pop(session_id, None)
            self._order_locks.pop(session_id, None)
