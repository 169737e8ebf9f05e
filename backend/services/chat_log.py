from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy import select

from app.store import Store
from models import ChatMessage, GameSession, MessageType, Participant, SessionStatus, utcnow
from services.errors import ForbiddenError, InvalidError, NotActiveError, NotFoundError

logger = logging.getLogger(__name__)

HISTORY_MAX_LIMIT = 200


class ChatLog:
    """
    Append-only per-session message log.

    Sequence numbers come from ``GameSession.last_message_seq`` incremented under
    the session row lock, so they are strictly increasing and gap-free per session.
    """

    def __init__(self, store: Store, *, max_length: int = 500) -> None:
        self._store = store
        self._max_length = max_length

    async def append(
        self,
        session_id: str,
        user_id: str,
        text: str,
        message_type: MessageType | str = MessageType.CHAT,
    ) -> ChatMessage:
        text = (text or "").strip()
        if not text:
            raise InvalidError("Message is empty")
        if len(text) > self._max_length:
            raise InvalidError("Message too long", max_length=self._max_length)
        try:
            message_type = MessageType(message_type)
        except ValueError as exc:
            raise InvalidError("Unknown message type", type=str(message_type)) from exc
        return await asyncio.to_thread(self._append_tx, session_id, user_id, text, message_type)

    async def history(self, session_id: str, *, after_seq: int = 0, limit: int = 100) -> list[ChatMessage]:
        limit = max(1, min(limit, HISTORY_MAX_LIMIT))
        return await asyncio.to_thread(self._history, session_id, after_seq, limit)

    def _append_tx(
        self, session_id: str, user_id: str, text: str, message_type: MessageType
    ) -> ChatMessage:
        with self._store.transaction() as db:
            session = db.get(GameSession, session_id, with_for_update=True)
            if session is None:
                raise NotFoundError("Session not found", session_id=session_id)
            if session.status != SessionStatus.ACTIVE:
                raise NotActiveError("Session is not active", session_id=session_id)
            participant = db.get(Participant, (session_id, user_id))
            if participant is None or not participant.is_present:
                raise ForbiddenError("Only present participants can post", session_id=session_id)

            now = utcnow()
            session.last_message_seq = (session.last_message_seq or 0) + 1
            session.last_activity_at = now
            message = ChatMessage(
                session_id=session_id,
                user_id=user_id,
                seq=session.last_message_seq,
                message=text,
                type=message_type,
                created_at=now,
            )
            db.add(message)
        logger.debug("[chat_log] Appended session=%s seq=%d", session_id, message.seq)
        return message

    def _history(self, session_id: str, after_seq: int, limit: int) -> list[ChatMessage]:
        with self._store.read() as db:
            if db.get(GameSession, session_id) is None:
                raise NotFoundError("Session not found", session_id=session_id)
            rows = db.execute(
                select(ChatMessage)
                .where(ChatMessage.session_id == session_id, ChatMessage.seq > after_seq)
                .order_by(ChatMessage.seq)
                .limit(limit)
            )
            return list(rows.scalars())


def message_view(message: ChatMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "session_id": message.session_id,
        "user_id": message.user_id,
        "seq": message.seq,
        "message": message.message,
        "type": MessageType(message.type).value,
        "created_at": message.created_at.isoformat() + "Z",
    }
