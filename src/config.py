"""
Team Presence Bot — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # SQLite
    DATABASE_PATH: str = "data/presence.db"

    # Security
    ADMIN_USER_IDS: list[int] = []      # may import the roster and export statistics
    ALLOWED_USER_IDS: list[int] = []    # empty → anyone may use the bot

    # "now" and "today" are taken in this zone
    TIMEZONE: str = "Europe/Moscow"

    # Conversation sessions
    SESSION_TTL_MINUTES: int = 30
    CONFIRM_OVERWRITES: bool = True

    @field_validator("ADMIN_USER_IDS", "ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("SESSION_TTL_MINUTES", mode="before")
    @classmethod
    def parse_ttl(cls, v: str | int) -> int:
        return int(v)

    @field_validator("CONFIRM_OVERWRITES", mode="before")
    @classmethod
    def parse_flag(cls, v: str | bool) -> bool:
        if isinstance(v, bool):
            return v
        return str(v).strip().lower() in ("1", "true", "yes", "on")


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/presence.db"),
        ADMIN_USER_IDS=os.getenv("ADMIN_USER_IDS", ""),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        TIMEZONE=os.getenv("TIMEZONE", "Europe/Moscow"),
        SESSION_TTL_MINUTES=os.getenv("SESSION_TTL_MINUTES", "30"),
        CONFIRM_OVERWRITES=os.getenv("CONFIRM_OVERWRITES", "true"),
    )


# Singleton — imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
