"""
Runtime configuration for the Islamic Habit Tracker.

Everything comes from environment variables and is read once; call
``get_settings.cache_clear()`` in tests after changing the environment.
"""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using %s", name, raw, default)
        return default


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    port: int = 8000
    log_level: str = "INFO"
    log_file: Optional[str] = None
    default_owner_id: Optional[str] = None
    streak_window_days: int = 30
    tracker_days: int = 45
    max_replay_attempts: int = 5
    mongo_timeout_ms: int = 3000


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        database_name=os.getenv("DATABASE_NAME"),
        port=_int_env("PORT", 8000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_file=os.getenv("LOG_FILE") or None,
        default_owner_id=os.getenv("DEFAULT_OWNER_ID") or None,
        streak_window_days=_int_env("STREAK_WINDOW_DAYS", 30),
        tracker_days=_int_env("TRACKER_DAYS", 45),
        max_replay_attempts=_int_env("MAX_REPLAY_ATTEMPTS", 5),
        mongo_timeout_ms=_int_env("MONGO_TIMEOUT_MS", 3000),
    )
