from __future__ import annotations

import asyncio

import pytest

from conftest import make_game, make_user
from models import MessageType
from services.errors import ForbiddenError, InvalidError, NotActiveError, NotFoundError
from services.session_registry import SessionOptions


async def _live_session(services):
    host = make_user(services, "host")
    guest = make_user(services, "guest")
    game = make_game(services)
    created = await services.registry.create_session(game.id, host.id, SessionOptions(max_players=2))
    await services.registry.join_session(created.session_id, guest.id)
    return created.session_id, host, guest


@pytest.mark.asyncio
async def test_sequence_numbers_are_gap_free_under_concurrency(services) -> None:
    session_id, host, guest = await _live_session(services)

    await asyncio.gather(
        *(services.chat_log.append(session_id, (host, guest)[i % 2].id, f"gg {i}") for i in range(20))
    )

    history = await services.chat_log.history(session_id)
    assert [m.seq for m in history] == list(range(1, 21))


@pytest.mark.asyncio
async def test_history_pages_forward_from_after_seq(services) -> None:
    session_id, host, _ = await _live_session(services)
    for i in range(5):
        await services.chat_log.append(session_id, host.id, f"line {i}")

    page = await services.chat_log.history(session_id, after_seq=3, limit=10)

    assert [m.seq for m in page] == [4, 5]
    assert page[0].message == "line 3"
    assert page[0].type == MessageType.CHAT


@pytest.mark.asyncio
async def test_append_strips_and_validates_text(services) -> None:
    session_id, host, _ = await _live_session(services)

    message = await services.chat_log.append(session_id, host.id, "  hello  ", "game_event")
    assert message.message == "hello"
    assert message.type == MessageType.GAME_EVENT

    with pytest.raises(InvalidError):
        await services.chat_log.append(session_id, host.id, "   ")
    with pytest.raises(InvalidError):
        await services.chat_log.append(session_id, host.id, "x" * 501)
    with pytest.raises(InvalidError):
        await services.chat_log.append(session_id, host.id, "hi", "shout")


@pytest.mark.asyncio
async def test_only_present_participants_can_post(services) -> None:
    session_id, host, guest = await _live_session(services)
    outsider = make_user(services, "outsider")

    with pytest.raises(ForbiddenError):
        await services.chat_log.append(session_id, outsider.id, "let me in")

    await services.registry.leave_session(session_id, guest.id)
    with pytest.raises(ForbiddenError):
        await services.chat_log.append(session_id, guest.id, "bye")


@pytest.mark.asyncio
async def test_no_chat_after_the_session_ends(services) -> None:
    session_id, host, _ = await _live_session(services)
    await services.chat_log.append(session_id, host.id, "last words")
    await services.registry.end_session(session_id, host.id)

    with pytest.raises(NotActiveError):
        await services.chat_log.append(session_id, host.id, "anyone?")
    assert len(await services.chat_log.history(session_id)) == 1
    with pytest.raises(NotFoundError):
        await services.chat_log.history("missing")
