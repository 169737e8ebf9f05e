import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from conftest import auth_header, make_game


@pytest.fixture
def client(settings, services):
    app = create_app(settings, services=services)
    with TestClient(app) as client:
        yield client


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_stats_counts_games_sessions_and_online_users(client, services) -> None:
    game = make_game(services)
    created = client.post("/api/sessions", json={"game_id": game.id}, headers=auth_header("host"))
    assert created.status_code == 201

    stats = client.get("/api/stats").json()

    assert stats["total_games"] == 1
    assert stats["active_sessions"] == 1
    assert stats["online_users"] == 0
    assert stats["uptime_seconds"] >= 0


def test_games_listing_filters_and_pages(client, services) -> None:
    make_game(services, slug="contra", genre="Action")
    make_game(services, slug="super-mario-world", system="snes", genre="Platformer")
    make_game(services, slug="street-fighter-ii", system="snes", genre="Fighting")

    snes = client.get("/api/games", params={"system": "SNES", "limit": 1}).json()
    assert snes["total"] == 2
    assert [g["slug"] for g in snes["games"]] == ["street-fighter-ii"]

    second_page = client.get("/api/games", params={"system": "snes", "limit": 1, "page": 2}).json()
    assert [g["slug"] for g in second_page["games"]] == ["super-mario-world"]

    search = client.get("/api/games", params={"search": "PLAT"}).json()
    assert [g["slug"] for g in search["games"]] == ["super-mario-world"]


def test_unknown_game_maps_to_not_found(client) -> None:
    response = client.get("/api/games/missing")
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_me_requires_a_valid_token(client) -> None:
    assert client.get("/api/me").status_code == 401
    bad = client.get("/api/me", headers={"Authorization": "Bearer nope"})
    assert bad.status_code == 401
    assert bad.json()["code"] == "unauthorized"

    me = client.get("/api/me", headers=auth_header("sagat"))
    assert me.status_code == 200
    assert me.json()["username"] == "sagat"


def test_seeding_adds_sample_games_once(settings, services) -> None:
    settings.seed_sample_games = True
    app = create_app(settings, services=services)
    with TestClient(app) as client:
        first = client.get("/api/games", params={"limit": 100}).json()["total"]
    with TestClient(app) as client:
        second = client.get("/api/games", params={"limit": 100}).json()["total"]
    assert first == second == 6
