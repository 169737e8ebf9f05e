"""Read-only game catalog plus optional demo seeding."""

from __future__ import annotations

import logging

from sqlalchemy import func, or_, select

from app.store import Store
from models import Game
from services.errors import NotFoundError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

SAMPLE_GAMES = [
    {"title": "Super Mario Bros.", "slug": "super-mario-bros", "system": "nes", "year": 1985,
     "genre": "Platformer", "player_count": 2, "emulator_core": "fceumm"},
    {"title": "The Legend of Zelda", "slug": "the-legend-of-zelda", "system": "nes", "year": 1986,
     "genre": "Adventure", "player_count": 1, "emulator_core": "fceumm"},
    {"title": "Contra", "slug": "contra", "system": "nes", "year": 1987,
     "genre": "Action", "player_count": 2, "emulator_core": "fceumm"},
    {"title": "Super Mario World", "slug": "super-mario-world", "system": "snes", "year": 1990,
     "genre": "Platformer", "player_count": 2, "emulator_core": "snes9x"},
    {"title": "Street Fighter II", "slug": "street-fighter-ii", "system": "snes", "year": 1992,
     "genre": "Fighting", "player_count": 2, "emulator_core": "snes9x"},
    {"title": "Mario Party 7", "slug": "mario-party-7", "system": "gamecube", "year": 2005,
     "genre": "Party", "player_count": 4, "emulator": "dolphin-emu"},
]


class GameCatalog:
    def __init__(self, store: Store) -> None:
        self._store = store

    def list_games(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        system: str | None = None,
        search: str | None = None,
    ) -> tuple[list[Game], int]:
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        stmt = select(Game).where(Game.is_active.is_(True))
        if system:
            stmt = stmt.where(Game.system == system.lower())
        if search:
            pattern = f"%{search.lower()}%"
            stmt = stmt.where(or_(func.lower(Game.title).like(pattern), func.lower(Game.genre).like(pattern)))

        with self._store.read() as db:
            total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
            games = list(
                db.execute(stmt.order_by(Game.title).offset((page - 1) * limit).limit(limit)).scalars()
            )
        return games, total

    def get_game(self, game_id: str) -> Game:
        with self._store.read() as db:
            game = db.get(Game, game_id)
        if game is None:
            raise NotFoundError("Game not found", game_id=game_id)
        return game

    def count_games(self) -> int:
        with self._store.read() as db:
            return db.execute(
                select(func.count()).select_from(Game).where(Game.is_active.is_(True))
            ).scalar_one()

    def seed_sample_games(self) -> int:
        created = 0
        with self._store.transaction() as db:
            existing = set(db.execute(select(Game.slug)).scalars())
            for data in SAMPLE_GAMES:
                if data["slug"] in existing:
                    continue
                db.add(Game(**data))
                created += 1
        if created:
            logger.info("[catalog] Seeded %d sample games", created)
        return created
