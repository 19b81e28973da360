"""Application configuration."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from ENGINE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Bar queue per bot; a full queue drops the bar
    queue_size: int = 1000

    # Seconds to wait for the broker before the order counts as not executed
    execution_timeout: float = 10.0

    # Bot definitions (YAML)
    bots_config: Path = Path("bots.yaml")

    # JSON-lines event/trade records; unset disables recording
    records_path: Path | None = None

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
