"""Configuration utilities for the workflow engine service."""

import sys
from functools import lru_cache
from typing import List, Literal, Optional

from loguru import logger
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Engine and service settings, read from ``CHAINFLOW_*`` variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="CHAINFLOW_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    app_name: str = "chainflow"
    cors_origins: List[str] = ["http://localhost:3000"]
    store_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    history_ttl_days: int = 30
    # Applied to Then/Agent steps that declare no timeout of their own
    default_step_timeout_seconds: Optional[float] = None
    log_level: str = "INFO"


@lru_cache
def get_settings() -> EngineSettings:
    """Return cached EngineSettings to avoid repeated environment parsing."""

    return EngineSettings()


def configure_logging(level: str = "INFO") -> None:
    """Route loguru output to stderr at ``level``."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
