"""Environment-driven settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from .provider import RetryPolicy


class Settings(BaseSettings):
    """Application settings read from `LINGOTRAINER_*` variables and `.env`."""

    data_dir: Path = Path(".lingotrainer")

    # Content provider (OpenAI-compatible chat completions + speech endpoints)
    provider_base_url: str = "https://api.openai.com/v1"
    provider_api_key: str = ""
    provider_model: str = "gpt-4o-mini"
    speech_model: str = "tts-1"
    speech_voice: str = "alloy"
    request_timeout_seconds: float = 30.0

    # Retry policy
    retry_max_attempts: int = 4
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    retry_rate_limit_floor_seconds: float = 5.0

    # Lesson rules
    timer_budget_seconds: int = 120
    starting_hearts: int = 5
    daily_goal: int = 50
    streak_freeze_cost: int = 50

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="LINGOTRAINER_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def db_path(self) -> Path:
        return self.data_dir / "progress.db"

    def retry_policy(self) -> RetryPolicy:
        """Build the provider retry policy from settings."""
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
            rate_limit_floor=self.retry_rate_limit_floor_seconds,
        )


@lru_cache
def get_settings() -> Settings:
    """Return process-wide settings."""
    return Settings()
