"""Runtime settings read from the environment."""
from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DATA_DIR = Path(__file__).parent / "data"


class Settings(BaseSettings):
    """Settings from ``SLEUTH_*`` environment variables (LLM options use ``LLM_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="SLEUTH_",
        env_ignore_empty=True,
        populate_by_name=True,
        extra="ignore",
    )

    db_path: Path = DATA_DIR / "sleuth.db"
    max_concurrent_jobs: int = Field(default=4, ge=1)

    user_agent: str = "SleuthBot/1.0 (+https://sleuth.local)"
    request_timeout_seconds: float = Field(
        default=15.0, gt=0, validation_alias="SLEUTH_REQUEST_TIMEOUT",
    )
    search_min_delay_seconds: float = Field(
        default=12.0, ge=0, validation_alias="SLEUTH_SEARCH_MIN_DELAY",
    )
    search_max_delay_seconds: float = 120.0
    max_page_text: int = 10_000

    llm_provider: str = Field(default="", validation_alias="LLM_PROVIDER")
    llm_model: str = Field(default="", validation_alias="LLM_MODEL")

    log_level: str = "INFO"

    @field_validator("llm_provider", "llm_model", "user_agent")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("log_level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.strip().upper() or "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | None = None) -> None:
    """Root logging setup for the command-line entry points."""
    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )
