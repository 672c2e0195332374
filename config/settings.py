"""Application settings and configuration management."""
from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or defaults."""

    DB_PATH: str = Field(default="data/sessions.db")

    WRITTEN_MATCH_THRESHOLD: float = Field(default=80.0, ge=0.0, le=100.0)
    MATCHING_CONFIG: str = str(Path(__file__).with_name("matching.yaml"))

    QUESTION_REUSE_COOLDOWN_DAYS: int = Field(default=30, ge=0)
    ALLOW_SHORT_SESSIONS: bool = True
    REFUND_ON_ABANDON: bool = False

    HISTORY_PAGE_SIZE: int = Field(default=10, ge=1)

    model_config = SettingsConfigDict(env_file=".env", validate_assignment=True, extra="ignore")


settings = Settings()
