from __future__ import annotations

import asyncio

import pytest

from conftest import make_game, make_user
from services.errors import ForbiddenError, InvalidError
from services.fanout import Connection, RealtimeFanout, make_event
from services.session_registry import SessionOptions


def _drain(conn: Connection) -> list[dict]:
    events = []
    while not conn.outbox.empty():
        events.append(conn.outbox.get_nowait())
    return events


@pytest.mark.asyncio
async def test_broadcast_reaches_group_members_except_excluded() -> None:
    fanout = RealtimeFanout()
    a, b, outsider = Connection("a"), Connection("b"), Connection("c")
    await fanout.join_group(a, "s1")
    await fanout.join_group(b, "s1")
    await fanout.register(outsider)

    delivered = await fanout.broadcast("s1", make_event("ping", "s1"), exclude=a)

    assert delivered == 1
    assert _drain(a) == []
    assert _drain(b)[0]["type"] == "ping"
    assert _drain(outsider) == []


@pytest.mark.asyncio
async def test_relay_targets_other_members_or_one_user() -> None:
    fanout = RealtimeFanout()
    host, p2, p3 = Connection("host"), Connection("p2"), Connection("p3")
    for conn in (host, p2, p3):
        await fanout.join_group(conn, "s1")

    assert await fanout.relay(host, "s1", "offer", {"sdp": "v=0"}) == 2
    assert await fanout.relay(p2, "s1", "answer", {"sdp": "v=0"}, to_user_id="host") == 1

    offer = _drain(p3)[0]
    assert offer["type"] == "signal"
    assert offer["kind"] == "offer"
    assert offer["from_user_id"] == "host"
    assert offer["payload"] == {"sdp": "v=0"}
    answer = _drain(host)[0]
    assert answer["to_user_id"] == "host"
    assert answer["from_user_id"] == "p2"


@pytest.mark.asyncio
async def test_relay_requires_membership_and_known_kind() -> None:
    fanout = RealtimeFanout()
    member, stranger = Connection("m"), Connection("x")
    await fanout.join_group(member, "s1")

    with pytest.raises(ForbiddenError):
        await fanout.relay(stranger, "s1", "input", {"button": "A"})
    with pytest.raises(InvalidError):
        await fanout.relay(member, "s1", "screenshot", {})


@pytest.mark.asyncio
async def test_slow_consumer_is_closed_but_keeps_memberships_until_disconnect() -> None:
    fanout = RealtimeFanout()
    slow = Connection("slow", queue_size=1)
    fast = Connection("fast")
    await fanout.join_group(slow, "s1")
    await fanout.join_group(fast, "s1")

    await fanout.broadcast("s1", make_event("one", "s1"))
    await fanout.broadcast("s1", make_event("two", "s1"))

    assert slow.closed.is_set()
    assert not fast.closed.is_set()
    assert [e["type"] for e in _drain(fast)] == ["one", "two"]
    assert await fanout.disconnect(slow) == {"s1"}
    assert await fanout.members("s1") == [fast]


@pytest.mark.asyncio
async def test_leave_and_close_group() -> None:
    fanout = RealtimeFanout()
    a, b = Connection("a"), Connection("b")
    await fanout.join_group(a, "s1")
    await fanout.join_group(b, "s1")
    await fanout.join_group(a, "s2")

    assert await fanout.leave_group(a, "s1") is True
    assert await fanout.leave_group(a, "s1") is False
    assert await fanout.user_in_group("s1", "b")
    assert not await fanout.user_in_group("s1", "b", exclude=b)

    await fanout.close_group("s1")
    assert await fanout.members("s1") == []
    assert not await fanout.is_member(b, "s1")
    assert await fanout.disconnect(a) == {"s2"}


@pytest.mark.asyncio
async def test_remove_user_drops_every_tab_of_that_user() -> None:
    fanout = RealtimeFanout()
    tab1, tab2, other = Connection("alice"), Connection("alice"), Connection("bob")
    for conn in (tab1, tab2, other):
        await fanout.join_group(conn, "s1")
    await fanout.join_group(tab1, "s2")

    assert await fanout.remove_user("s1", "alice") == 2
    assert await fanout.remove_user("s1", "alice") == 0
    assert await fanout.members("s1") == [other]
    assert await fanout.is_member(tab1, "s2")

    with pytest.raises(ForbiddenError):
        await fanout.relay(tab2, "s1", "input", {"button": "A"})
    await fanout.broadcast("s1", make_event("ping", "s1"))
    assert _drain(tab1) == [] and _drain(tab2) == []


@pytest.mark.asyncio
async def test_ordering_lock_is_released_with_the_last_member() -> None:
    fanout = RealtimeFanout()
    a, b = Connection("a"), Connection("b")
    await fanout.join_group(a, "s1")
    await fanout.join_group(b, "s1")
    async with fanout._order_locks["s1"]:
        pass

    await fanout.leave_group(a, "s1")
    assert "s1" in fanout._order_locks
    await fanout.disconnect(b)
    assert "s1" not in fanout._order_locks
    assert "s1" not in fanout._groups


@pytest.mark.asyncio
async def test_publish_global_reaches_every_registered_connection() -> None:
    fanout = RealtimeFanout()
    a, b = Connection("a"), Connection("b")
    await fanout.register(a)
    await fanout.join_group(b, "s1")

    assert await fanout.publish_global({"type": "user_online", "user_id": "z"}) == 2


@pytest.mark.asyncio
async def test_chat_is_observed_in_sequence_order(services) -> None:
    host = make_user(services, "host")
    guest = make_user(services, "guest")
    game = make_game(services)
    created = await services.registry.create_session(game.id, host.id, SessionOptions(max_players=2))
    await services.registry.join_session(created.session_id, guest.id)
    host_conn, guest_conn = Connection(host.id), Connection(guest.id)
    await services.fanout.join_group(host_conn, created.session_id)
    await services.fanout.join_group(guest_conn, created.session_id)
    _drain(host_conn)

    await asyncio.gather(
        *(
            services.fanout.post_message((host_conn, guest_conn)[i % 2], created.session_id, f"msg {i}")
            for i in range(12)
        )
    )

    for conn in (host_conn, guest_conn):
        seqs = [e["message"]["seq"] for e in _drain(conn) if e["type"] == "new_message"]
        assert seqs == list(range(1, 13))


@pytest.mark.asyncio
async def test_post_message_requires_room_membership(services) -> None:
    host = make_user(services, "host")
    game = make_game(services)
    created = await services.registry.create_session(game.id, host.id)

    with pytest.raises(ForbiddenError):
        await services.fanout.post_message(Connection(host.id), created.session_id, "hello?")
