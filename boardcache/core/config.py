from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing_extensions import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    cache_backend: Literal["redis", "memory"] = "redis"
    redis_dsn: str = "redis://localhost:6379/0"
    cache_namespace: str = "boardcache:"
    redis_pool_size: int = 5

    memory_limit_mb: float = 20  # hard cap
    eviction_threshold_mb: float = 18
    default_ttl_seconds: int = 300
    guard_interval_seconds: int = 300  # MemoryGuard tick
    eviction_order: Literal["created", "ttl", "lru"] = "created"
    cache_policies: dict[str, tuple[str, int]] = {}

    population_workers: int = 4
    population_queue_size: int = 256

    timeout_seconds: float = 30  # persist timeout per mutation
    recent_mutations_size: int = 4096
    recent_mutations_ttl_seconds: int = 3600

    database_url: str | None = None
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
