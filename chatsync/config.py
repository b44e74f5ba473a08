import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class Settings:

    store_backend: str = field(default_factory=lambda: os.getenv("STORE_BACKEND", "mongo").lower())
    mongo_url: str = field(default_factory=lambda: os.getenv("MONGO_URL", "mongodb://localhost:27017"))
    mongo_db_name: str = field(default_factory=lambda: os.getenv("MONGO_DB_NAME", "chatsync"))
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./chatsync.db"))
    # unset -> in-process bus, single worker only
    redis_url: str | None = field(default_factory=lambda: os.getenv("REDIS_URL") or None)
    retry_attempts: int = field(default_factory=lambda: _env_int("RETRY_ATTEMPTS", 3))
    retry_base_delay: float = field(default_factory=lambda: _env_float("RETRY_BASE_DELAY", 0.5))
    typing_timeout: float = field(default_factory=lambda: _env_float("TYPING_TIMEOUT", 2.0))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())

    def __post_init__(self) -> None:
        if self.store_backend not in ("mongo", "sql"):
            raise ValueError(f"STORE_BACKEND must be 'mongo' or 'sql', got {self.store_backend!r}")


def get_settings() -> Settings:
    return Settings()
