"""
EduBot — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from edubot/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # Storage backend: "sqlite" (local file) | "postgresql" (hosted)
    DB_TYPE: str = "sqlite"
    DATABASE_PATH: str = "data/edubot.db"
    DATABASE_URL: str = ""

    # Security: empty ALLOWED_USER_IDS means the bot is open to everyone
    ALLOWED_USER_IDS: list[int] = []
    ADMIN_USER_IDS: list[int] = []

    # Scheduling
    TIMEZONE: str = "Asia/Riyadh"
    RECURRENCE_LOOKAHEAD_DAYS: int = 30
    OVERDUE_SWEEP_MINUTES: int = 60

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    @field_validator("ALLOWED_USER_IDS", "ADMIN_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator(
        "RECURRENCE_LOOKAHEAD_DAYS",
        "OVERDUE_SWEEP_MINUTES",
        mode="before",
    )
    @classmethod
    def parse_positive_int(cls, v: str | int) -> int:
        value = int(v)
        if value < 1:
            raise ValueError(f"must be a positive integer, got {value}")
        return value

    @field_validator("DB_TYPE", "LOG_LEVEL", mode="before")
    @classmethod
    def normalize_choice(cls, v: str) -> str:
        return v.strip()


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    db_type = os.getenv("DB_TYPE", "sqlite").lower()
    database_url = os.getenv("DATABASE_URL", "")
    if db_type in ("postgresql", "postgres") and not database_url:
        print("ERROR: DATABASE_URL is required when DB_TYPE=postgresql", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        DB_TYPE=db_type,
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/edubot.db"),
        DATABASE_URL=database_url,
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        ADMIN_USER_IDS=os.getenv("ADMIN_USER_IDS", ""),
        TIMEZONE=os.getenv("TIMEZONE", "Asia/Riyadh"),
        RECURRENCE_LOOKAHEAD_DAYS=os.getenv("RECURRENCE_LOOKAHEAD_DAYS", "30"),
        OVERDUE_SWEEP_MINUTES=os.getenv("OVERDUE_SWEEP_MINUTES", "60"),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").upper(),
        LOG_FILE=os.getenv("LOG_FILE", ""),
    )


# Singleton, imported by all other modules as:
#   from edubot.config import settings
settings = _load_settings()
