"""
Medication Reminder — Centralized configuration.

Loads all settings from .env and validates them.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from medreminder/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram (only needed by the bot entry point)
    TELEGRAM_BOT_TOKEN: str = ""
    ALLOWED_USER_IDS: list[int] = []
    REMINDER_CHAT_ID: int = 0     # 0 → first allowed user

    # Durable key-value store (SQLite file)
    DATABASE_PATH: str = "data/reminders.db"

    # Wall-clock zone for reminder date/time strings
    TIMEZONE: str = "UTC"

    # Reminder lifecycle
    MAX_SNOOZE_COUNT: int = 3
    SNOOZE_DURATION_MINUTES: int = 15
    REMINDER_TIMEOUT_MINUTES: int = 15      # grace window before auto-"missed"
    REPEAT_NOTIFICATION_INTERVALS: list[int] = [5, 10, 15]

    LOG_LEVEL: str = "INFO"

    @field_validator("ALLOWED_USER_IDS", "REPEAT_NOTIFICATION_INTERVALS", mode="before")
    @classmethod
    def parse_int_list(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(part.strip()) for part in v.split(",") if part.strip()]
        return []

    @field_validator("SNOOZE_DURATION_MINUTES", "REMINDER_TIMEOUT_MINUTES", mode="before")
    @classmethod
    def parse_positive_minutes(cls, v: str | int) -> int:
        minutes = int(v)
        if minutes <= 0:
            raise ValueError(f"Duration must be positive, got {minutes}")
        return minutes

    @field_validator("MAX_SNOOZE_COUNT", mode="before")
    @classmethod
    def parse_snooze_limit(cls, v: str | int) -> int:
        limit = int(v)
        if limit < 0:
            raise ValueError(f"MAX_SNOOZE_COUNT cannot be negative, got {limit}")
        return limit

    @field_validator("REMINDER_CHAT_ID", mode="before")
    @classmethod
    def parse_chat_id(cls, v: str | int) -> int:
        return int(v or 0)

    @property
    def reminder_chat_id(self) -> int:
        """Chat that receives reminder prompts."""
        if self.REMINDER_CHAT_ID:
            return self.REMINDER_CHAT_ID
        return self.ALLOWED_USER_IDS[0] if self.ALLOWED_USER_IDS else 0


def _load_settings() -> Settings:
    """Load settings from environment."""
    return Settings(
        TELEGRAM_BOT_TOKEN=os.getenv("TELEGRAM_BOT_TOKEN", ""),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        REMINDER_CHAT_ID=os.getenv("REMINDER_CHAT_ID", "0"),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/reminders.db"),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        MAX_SNOOZE_COUNT=os.getenv("MAX_SNOOZE_COUNT", "3"),
        SNOOZE_DURATION_MINUTES=os.getenv("SNOOZE_DURATION_MINUTES", "15"),
        REMINDER_TIMEOUT_MINUTES=os.getenv("REMINDER_TIMEOUT_MINUTES", "15"),
        REPEAT_NOTIFICATION_INTERVALS=os.getenv("REPEAT_NOTIFICATION_INTERVALS", "5,10,15"),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
    )


# Singleton — imported by all other modules as:
#   from medreminder.config import settings
settings = _load_settings()
