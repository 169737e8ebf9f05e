from __future__ import annotations

import pytest

from app.config import Settings
from app.container import Services, build_services
from models import Game, UserProfile
from services.tokens import create_access_token

TEST_JWT_SECRET = "test-secret-for-platium"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{(tmp_path / 'platium-test.db').as_posix()}",
        auth_jwt_secret=TEST_JWT_SECRET,
        presence_refresh_seconds=3600,
        cors_origins=["http://test"],
    )


@pytest.fixture
def services(settings: Settings) -> Services:
    svc = build_services(settings)
    svc.store.init_schema()
    yield svc
    svc.store.dispose()


def make_user(services: Services, name: str) -> UserProfile:
    return services.identity.resolve(f"ext-{name}", username=name, display_name=name.title())


def make_game(services: Services, *, player_count: int = 2, slug: str = "contra", **fields) -> Game:
    with services.store.transaction() as db:
        game = Game(
            title=fields.pop("title", slug.replace("-", " ").title()),
            slug=slug,
            system=fields.pop("system", "nes"),
            player_count=player_count,
            **fields,
        )
        db.add(game)
    return game


def token_for(name: str) -> str:
    return create_access_token(TEST_JWT_SECRET, f"ext-{name}", username=name)


def auth_header(name: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token_for(name)}"}
