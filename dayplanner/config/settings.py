from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Read from the environment (case-insensitive, e.g. REDIS_URL) or .env."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "dayplanner"
    debug: bool = True
    redis_url: str = "redis://localhost:6379/0"
    cache_enabled: bool = True
    cache_ttl_seconds: int = 3600
    slot_step_minutes: int = 5
    dependency_buffer_minutes: int = 5
    default_wake_time: str = "06:00"
    default_sleep_time: str = "22:00"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
