from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from app.container import Services
from models import Game
from routes.deps import get_services

router = APIRouter(tags=["games"])


class GameResponse(BaseModel):
    id: str
    title: str
    slug: str
    system: str
    year: int | None = None
    genre: str | None = None
    player_count: int
    emulator: str
    emulator_core: str | None = None
    cover_art_url: str | None = None
    description: str | None = None
    play_count: int


class GameListResponse(BaseModel):
    games: list[GameResponse]
    page: int
    limit: int
    total: int


def _game_response(game: Game) -> GameResponse:
    return GameResponse(
        id=game.id,
        title=game.title,
        slug=game.slug,
        system=game.system,
        year=game.year,
        genre=game.genre,
        player_count=game.player_count,
        emulator=game.emulator,
        emulator_core=game.emulator_core,
        cover_art_url=game.cover_art_url,
        description=game.description,
        play_count=game.play_count or 0,
    )


@router.get("/games", response_model=GameListResponse)
async def list_games(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    system: str | None = None,
    search: str | None = None,
    services: Services = Depends(get_services),
) -> GameListResponse:
    games, total = await run_in_threadpool(
        lambda: services.catalog.list_games(page=page, limit=limit, system=system, search=search)
    )
    return GameListResponse(games=[_game_response(g) for g in games], page=page, limit=limit, total=total)


@router.get("/games/{game_id}", response_model=GameResponse)
async def get_game(game_id: str, services: Services = Depends(get_services)) -> GameResponse:
    game = await run_in_threadpool(services.catalog.get_game, game_id)
    return _game_response(game)
