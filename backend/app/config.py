import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# Load .env from backend dir; real environment variables win.
load_dotenv(Path(__file__).resolve().parents[1] / ".env")

_TRUTHY = ("1", "true", "yes", "on")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def _env_list(name: str, default: str = "") -> list[str]:
    items: list[str] = []
    for raw in os.getenv(name, default).split(","):
        value = raw.strip()
        if value and value not in items:
            items.append(value)
    return items


def _default_database_url() -> str:
    backend_root = Path(__file__).resolve().parents[1]
    return f"sqlite:///{(backend_root / 'platium.db').as_posix()}"


@dataclass
class Settings:
    database_url: str = field(default_factory=_default_database_url)
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_recycle: int = 3600
    # Upper bound for acquiring a connection / waiting on a locked row.
    db_timeout_seconds: float = 10.0

    redis_url: str = ""
    presence_ttl_seconds: int = 60
    presence_refresh_seconds: int = 20

    auth_jwt_secret: str = "change-me-in-prod"
    auth_jwt_algorithm: str = "HS256"
    auth_jwt_audience: str | None = None

    join_code_max_attempts: int = 8
    session_list_limit: int = 50
    chat_max_length: int = 500
    fanout_queue_size: int = 256

    cors_origins: list[str] = field(default_factory=lambda: ["https://platium.vip"])
    log_level: str = "INFO"
    seed_sample_games: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", "").strip() or _default_database_url(),
            db_pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
            db_max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
            db_pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "3600")),
            db_timeout_seconds=float(os.getenv("DB_TIMEOUT_SECONDS", "10")),
            redis_url=os.getenv("REDIS_URL", "").strip(),
            presence_ttl_seconds=int(os.getenv("PRESENCE_TTL_SECONDS", "60")),
            presence_refresh_seconds=int(os.getenv("PRESENCE_REFRESH_SECONDS", "20")),
            auth_jwt_secret=os.getenv("AUTH_JWT_SECRET", "change-me-in-prod"),
            auth_jwt_algorithm=os.getenv("AUTH_JWT_ALGORITHM", "HS256"),
            auth_jwt_audience=os.getenv("AUTH_JWT_AUDIENCE", "").strip() or None,
            join_code_max_attempts=int(os.getenv("JOIN_CODE_MAX_ATTEMPTS", "8")),
            session_list_limit=int(os.getenv("SESSION_LIST_LIMIT", "50")),
            chat_max_length=int(os.getenv("CHAT_MAX_LENGTH", "500")),
            fanout_queue_size=int(os.getenv("FANOUT_QUEUE_SIZE", "256")),
            cors_origins=_env_list("CORS_ORIGINS", "https://platium.vip"),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
            seed_sample_games=_env_bool("SEED_SAMPLE_GAMES"),
        )
