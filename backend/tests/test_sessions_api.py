"""REST surface for sessions, driven through httpx against the ASGI app."""

import httpx
import pytest

from app.main import create_app
from conftest import auth_header, make_game


@pytest.fixture
def app(settings, services):
    return create_app(settings, services=services)


@pytest.mark.anyio
async def test_session_lifecycle_over_rest(app, services) -> None:
    game = make_game(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post(
            "/api/sessions", json={"game_id": game.id, "max_players": 2}, headers=auth_header("host")
        )
        assert created.status_code == 201
        body = created.json()
        session_id, join_code = body["session_id"], body["join_code"]
        assert body["join_url"] == f"/play/{join_code}"

        listed = (await client.get("/api/sessions", headers=auth_header("alice"))).json()
        assert [s["id"] for s in listed] == [session_id]
        assert listed[0]["current_players"] == 1
        assert listed[0]["status"] == "active"

        by_code = await client.get(f"/api/sessions/code/{join_code.lower()}", headers=auth_header("alice"))
        assert by_code.json()["id"] == session_id

        joined = await client.post(f"/api/sessions/{session_id}/join", headers=auth_header("alice"))
        assert joined.status_code == 200
        assert joined.json()["username"] == "alice"

        full = await client.post(f"/api/sessions/{session_id}/join", headers=auth_header("bob"))
        assert full.status_code == 409
        assert full.json()["code"] == "full"

        spectating = await client.post(
            f"/api/sessions/{session_id}/join", json={"role": "spectator"}, headers=auth_header("bob")
        )
        assert spectating.status_code == 200

        detail = (await client.get(f"/api/sessions/{session_id}", headers=auth_header("bob"))).json()
        assert detail["current_players"] == 2
        assert detail["spectator_count"] == 1
        assert len(detail["participants"]) == 3

        forbidden = await client.post(f"/api/sessions/{session_id}/end", headers=auth_header("alice"))
        assert forbidden.status_code == 403

        ended = await client.post(f"/api/sessions/{session_id}/end", headers=auth_header("host"))
        assert ended.status_code == 200
        assert ended.json()["status"] == "ended"
        assert ended.json()["current_players"] == 0

        late = await client.post(f"/api/sessions/{session_id}/join", headers=auth_header("dave"))
        assert late.status_code == 409
        assert late.json()["code"] == "not_active"

        gone = await client.post(f"/api/sessions/{session_id}/leave", headers=auth_header("alice"))
        assert gone.status_code == 409
        assert gone.json()["code"] == "not_active"

        assert (await client.get("/api/sessions", headers=auth_header("alice"))).json() == []


@pytest.mark.anyio
async def test_create_session_validation_and_auth(app, services) -> None:
    game = make_game(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        anonymous = await client.post("/api/sessions", json={"game_id": game.id})
        assert anonymous.status_code == 401

        bad_fps = await client.post(
            "/api/sessions", json={"game_id": game.id, "fps": 144}, headers=auth_header("host")
        )
        assert bad_fps.status_code == 400
        assert bad_fps.json()["code"] == "invalid"

        missing_game = await client.post("/api/sessions", json={"game_id": "nope"}, headers=auth_header("host"))
        assert missing_game.status_code == 404

        first = await client.post("/api/sessions", json={"game_id": game.id}, headers=auth_header("host"))
        assert first.status_code == 201
        second = await client.post("/api/sessions", json={"game_id": game.id}, headers=auth_header("host"))
        assert second.status_code == 409
        assert second.json()["code"] == "already_active"


@pytest.mark.anyio
async def test_messages_endpoint_returns_history_in_order(app, services) -> None:
    game = make_game(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        created = (
            await client.post("/api/sessions", json={"game_id": game.id}, headers=auth_header("host"))
        ).json()
        host = services.identity.resolve("ext-host")
        for text in ("ready?", "go!", "gg"):
            await services.chat_log.append(created["session_id"], host.id, text)

        response = await client.get(
            f"/api/sessions/{created['session_id']}/messages",
            params={"after_seq": 1},
            headers=auth_header("host"),
        )
        assert response.status_code == 200
        assert [(m["seq"], m["message"]) for m in response.json()] == [(2, "go!"), (3, "gg")]

        missing = await client.get("/api/sessions/missing/messages", headers=auth_header("host"))
        assert missing.status_code == 404


@pytest.mark.anyio
async def test_private_session_chat_is_for_participants_only(app, services) -> None:
    game = make_game(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        created = (
            await client.post(
                "/api/sessions",
                json={"game_id": game.id, "max_players": 2, "is_private": True},
                headers=auth_header("host"),
            )
        ).json()
        session_id = created["session_id"]
        host = services.identity.resolve("ext-host")
        await services.chat_log.append(session_id, host.id, "invite only")

        outsider = await client.get(f"/api/sessions/{session_id}/messages", headers=auth_header("mallory"))
        assert outsider.status_code == 403
        assert outsider.json()["code"] == "forbidden"

        own = await client.get(f"/api/sessions/{session_id}/messages", headers=auth_header("host"))
        assert [m["message"] for m in own.json()] == ["invite only"]

        # A former participant keeps read access after leaving.
        assert (await client.post(f"/api/sessions/{session_id}/join", headers=auth_header("alice"))).status_code == 200
        assert (await client.post(f"/api/sessions/{session_id}/leave", headers=auth_header("alice"))).status_code == 200
        former = await client.get(f"/api/sessions/{session_id}/messages", headers=auth_header("alice"))
        assert former.status_code == 200
