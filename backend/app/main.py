import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.config import Settings
from app.container import Services, build_services
from routes import games, realtime_ws, sessions, users
from services.errors import DomainError
from services.provisioner import Provisioner

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    provisioner: Provisioner | None = None,
    services: Services | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    services = services or build_services(settings, provisioner=provisioner)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Store or cache unreachable at startup is fatal: let the exception propagate.
        await run_in_threadpool(services.store.init_schema)
        await services.presence.ping()
        if settings.seed_sample_games:
            await run_in_threadpool(services.catalog.seed_sample_games)
        await services.presence.start()
        logger.info("[app] Platium API ready")
        try:
            yield
        finally:
            await services.presence.stop()
            services.store.dispose()
            logger.info("[app] Platium API stopped")

    app = FastAPI(title="Platium Session API", version="0.1.0", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        if exc.retryable:
            logger.warning("[app] %s %s failed: %s", request.method, request.url.path, exc)
        body = {"detail": exc.message, "code": exc.code}
        if exc.details:
            body["details"] = exc.details
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/stats")
    async def stats(request: Request) -> dict[str, float | int]:
        svc: Services = request.app.state.services
        return {
            "total_games": await run_in_threadpool(svc.catalog.count_games),
            "active_sessions": await svc.registry.count_active(),
            "online_users": len(await svc.presence.list_online()),
            "uptime_seconds": round(svc.uptime_seconds, 1),
        }

    app.include_router(sessions.router, prefix="/api")
    app.include_router(games.router, prefix="/api")
    app.include_router(users.router, prefix="/api")
    app.include_router(realtime_ws.router, prefix="/api")
    return app


app = create_app()
