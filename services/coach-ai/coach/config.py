"""
Runtime configuration for the coach service.

Values come from ``COACH_*`` environment variables (or a ``.env`` file next to
the service root) and are validated with pydantic.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger(__name__)

_SERVICE_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _SERVICE_ROOT / ".env"

FOCUS_CAPACITY_CHOICES = (3, 4, 5)


class CoachSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="COACH_", env_file=_ENV_FILE, extra="ignore")

    openai_api_key: Optional[str] = Field(default=None)
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 500
    model_timeout_seconds: float = 30.0

    recent_message_window: int = 6
    insight_message_window: int = 10
    default_focus_capacity: int = 3
    review_habit_limit: int = 6
    default_timezone: str = "UTC"

    log_level: str = "INFO"

    @field_validator("default_focus_capacity")
    @classmethod
    def _capacity_in_range(cls, value: int) -> int:
        if value not in FOCUS_CAPACITY_CHOICES:
            raise ValueError(f"default_focus_capacity must be one of {FOCUS_CAPACITY_CHOICES}")
        return value

    @field_validator("recent_message_window", "insight_message_window", "review_habit_limit")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("window sizes must be positive")
        return value


@lru_cache(maxsize=1)
def get_settings() -> CoachSettings:
    settings = CoachSettings()
    logger.debug("config.loaded", model=settings.model, focus_capacity=settings.default_focus_capacity)
    return settings
