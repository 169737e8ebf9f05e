"""
Realtime gateway: one websocket per client, multiplexing session rooms.

Inbound frames are ``{"type": ...}`` objects (join_session_room, leave_session_room,
send_message, signal_relay, heartbeat). Everything sent to the client goes through
the connection's outbox so there is a single writer per socket. Failures are answered
with an ``error`` frame and the socket stays open.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketState

from app.container import Services
from models import SessionStatus
from services.errors import (
    DomainError,
    ForbiddenError,
    InvalidError,
    NotActiveError,
    NotFoundError,
    TransientError,
)
from services.fanout import Connection, make_event

router = APIRouter(tags=["realtime"])
logger = logging.getLogger(__name__)

# Application close codes (4000-4999 are free for app use).
CLOSE_UNAUTHORIZED = 4401
CLOSE_SLOW_CONSUMER = 4408
CLOSE_UNAVAILABLE = 1011


@router.websocket("/ws")
async def ws_realtime(websocket: WebSocket, token: str = Query(default="")) -> None:
    services: Services = websocket.app.state.services
    try:
        user = await run_in_threadpool(services.identity.authenticate, token)
    except DomainError as e:
        logger.info("[realtime_ws] Rejected connection: %s", e)
        await websocket.close(code=CLOSE_UNAUTHORIZED, reason=e.message)
        return

    await websocket.accept()
    conn = Connection(user.id, queue_size=services.settings.fanout_queue_size)
    try:
        await services.presence.mark_online(user.id)
        await run_in_threadpool(lambda: services.identity.touch(user.id, online=True))
    except TransientError as e:
        logger.warning("[realtime_ws] Presence unavailable user=%s: %s", user.id, e)
        await websocket.close(code=CLOSE_UNAVAILABLE)
        await _cleanup(conn, services)
        return
    await services.fanout.register(conn)
    logger.info("[realtime_ws] Connected user=%s conn=%s", user.id, conn.id)

    receiver = asyncio.create_task(_receive_loop(websocket, conn, services), name=f"ws-recv-{conn.id}")
    sender = asyncio.create_task(_drain_outbox(websocket, conn), name=f"ws-send-{conn.id}")
    closed = asyncio.create_task(conn.closed.wait(), name=f"ws-closed-{conn.id}")
    try:
        done, pending = await asyncio.wait({receiver, sender, closed}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in pending:
            with suppress(asyncio.CancelledError):
                await task
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning("[realtime_ws] Connection task failed conn=%s: %r", conn.id, task.exception())
        if closed in done:
            await _close_quietly(websocket, CLOSE_SLOW_CONSUMER)
        elif receiver not in done:
            await _close_quietly(websocket, CLOSE_UNAVAILABLE)
    finally:
        await _cleanup(conn, services)


async def _receive_loop(websocket: WebSocket, conn: Connection, services: Services) -> None:
    while True:
        try:
            raw = await websocket.receive_text()
        except WebSocketDisconnect:
            return
        try:
            frame = json.loads(raw)
            if not isinstance(frame, dict):
                raise ValueError("frame must be an object")
        except ValueError:
            conn.deliver(make_event("error", code=InvalidError.code, message="Malformed frame"))
            continue

        frame_type = frame.get("type")
        try:
            await _dispatch(frame_type, frame, conn, services)
        except DomainError as e:
            if e.retryable:
                logger.warning("[realtime_ws] %s failed user=%s: %s", frame_type, conn.user_id, e)
            error = make_event("error", frame.get("session_id"), code=e.code, message=e.message)
            error["request_type"] = frame_type
            conn.deliver(error)


async def _dispatch(frame_type: Any, frame: dict[str, Any], conn: Connection, services: Services) -> None:
    if frame_type == "heartbeat":
        await services.presence.heartbeat(conn.user_id)
        conn.deliver(make_event("pong"))
        return

    session_id = frame.get("session_id")
    if frame_type in ("join_session_room", "leave_session_room", "send_message", "signal_relay"):
        if not isinstance(session_id, str) or not session_id:
            raise InvalidError("session_id is required")

    if frame_type == "join_session_room":
        session = await services.registry.get_session(session_id)
        if session.status != SessionStatus.ACTIVE:
            raise NotActiveError("Session is not active", session_id=session_id)
        if not await services.registry.is_present(session_id, conn.user_id):
            raise ForbiddenError("Join the session before entering its room", session_id=session_id)
        # Subscribe first so nothing between snapshot and subscription is missed.
        await services.fanout.join_group(conn, session_id)
        participants = await services.registry.list_participants(session_id)
        conn.deliver(make_event("session_participants", session_id, participants=participants))
    elif frame_type == "leave_session_room":
        await services.fanout.leave_group(conn, session_id)
    elif frame_type == "send_message":
        # "type" names the frame, so the chat message type travels as message_type.
        await services.fanout.post_message(
            conn, session_id, frame.get("message") or "", frame.get("message_type") or "chat"
        )
    elif frame_type == "signal_relay":
        to_user_id = frame.get("to_user_id")
        if not await services.registry.is_present(session_id, conn.user_id):
            raise ForbiddenError("Only present participants can signal", session_id=session_id)
        await services.fanout.relay(
            conn, session_id, frame.get("kind"), frame.get("payload"), to_user_id=to_user_id or None
        )
    else:
        raise InvalidError("Unknown frame type", type=str(frame_type))


async def _drain_outbox(websocket: WebSocket, conn: Connection) -> None:
    while True:
        event = await conn.outbox.get()
        try:
            await websocket.send_json(event)
        except (WebSocketDisconnect, RuntimeError):
            return


async def _close_quietly(websocket: WebSocket, code: int) -> None:
    if websocket.application_state != WebSocketState.CONNECTED:
        return
    with suppress(RuntimeError, WebSocketDisconnect):
        await websocket.close(code=code)


async def _cleanup(conn: Connection, services: Services) -> None:
    """A dropped socket leaves every session room it was in, unless another tab keeps the user there."""
    user_id = conn.user_id
    session_ids = await services.fanout.disconnect(conn)
    for session_id in session_ids:
        if await services.fanout.user_in_group(session_id, user_id):
            continue
        try:
            await services.registry.leave_session(session_id, user_id)
        except (NotFoundError, NotActiveError):
            logger.debug("[realtime_ws] Implicit leave skipped session=%s user=%s", session_id, user_id)
        except TransientError as e:
            logger.warning("[realtime_ws] Implicit leave failed session=%s user=%s: %s", session_id, user_id, e)

    try:
        await services.presence.mark_offline(user_id)
        if await services.presence.local_connections(user_id) == 0:
            await run_in_threadpool(lambda: services.identity.touch(user_id, online=False))
    except DomainError as e:
        logger.warning("[realtime_ws] Offline bookkeeping failed user=%s: %s", user_id, e)
    logger.info("[realtime_ws] Disconnected user=%s conn=%s rooms=%d", user_id, conn.id, len(session_ids))
