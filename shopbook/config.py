from __future__ import annotations

import logging
import os
from typing import Any, Dict
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from shopbook.app.core.constants import (
    DB_AUTO_CREATE_ENABLED,
    DEFAULT_BUSINESS_TIMEZONE,
    DEFAULT_SLOT_GRANULARITY_MINUTES,
    LOG_FILE,
    NOTIFICATION_WEBHOOK_URL,
    RECONCILE_CHECK_SECONDS,
    REMINDERS_CHECK_SECONDS,
    RUN_RECONCILER_ENABLED,
    RUN_REMINDERS_ENABLED,
    SLOT_REPAIR_BACKOFF_SECONDS,
    SLOT_REPAIR_MAX_ATTEMPTS,
    WEBHOOK_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

# Load environment variables from .env
load_dotenv()

# Runtime settings; tests and the API may override entries in place.
SETTINGS: Dict[str, Any] = {
    "database_url": os.getenv(
        "DATABASE_URL",
        "postgresql+asyncpg://shop_user:change_me@db:5432/shopbook",
    ),
    "slot_granularity_minutes": DEFAULT_SLOT_GRANULARITY_MINUTES,
    # IANA timezone name for shops that do not carry their own
    "timezone": DEFAULT_BUSINESS_TIMEZONE,
    "notification_webhook_url": NOTIFICATION_WEBHOOK_URL,
    "webhook_timeout_seconds": WEBHOOK_TIMEOUT_SECONDS,
    "slot_repair_max_attempts": SLOT_REPAIR_MAX_ATTEMPTS,
    "slot_repair_backoff_seconds": SLOT_REPAIR_BACKOFF_SECONDS,
    "reconcile_check_seconds": RECONCILE_CHECK_SECONDS,
    "run_reconciler": RUN_RECONCILER_ENABLED,
    "reminders_check_seconds": REMINDERS_CHECK_SECONDS,
    "run_reminders": RUN_REMINDERS_ENABLED,
    "db_auto_create": DB_AUTO_CREATE_ENABLED,
    "log_file": LOG_FILE,
}


def get_setting(key: str, default: Any = None) -> Any:
    """Safely read a setting by key."""
    value = SETTINGS.get(key, default)
    logger.debug("Setting read: key=%s, value=%s", key, value)
    return value


def get_slot_granularity_minutes() -> int:
    """Default slot step for shops without their own granularity."""
    try:
        val = SETTINGS.get("slot_granularity_minutes", 30)
        return max(1, int(val))
    except Exception:
        return 30


def get_business_tz() -> ZoneInfo:
    try:
        return ZoneInfo(str(SETTINGS.get("timezone") or DEFAULT_BUSINESS_TIMEZONE))
    except Exception:
        logger.warning("Invalid timezone setting %r, falling back to UTC", SETTINGS.get("timezone"))
        return ZoneInfo("UTC")


def get_webhook_url() -> str | None:
    url = str(SETTINGS.get("notification_webhook_url") or "").strip()
    return url or None


def get_webhook_timeout_seconds() -> float:
    try:
        return max(0.1, float(SETTINGS.get("webhook_timeout_seconds", 10.0)))
    except Exception:
        return 10.0


def get_slot_repair_max_attempts() -> int:
    try:
        return max(1, int(SETTINGS.get("slot_repair_max_attempts", 3)))
    except Exception:
        return 3


def get_slot_repair_backoff_seconds() -> float:
    """Base delay for the slot repair backoff (doubles per attempt)."""
    try:
        return max(0.0, float(SETTINGS.get("slot_repair_backoff_seconds", 0.2)))
    except Exception:
        return 0.2


def get_reconcile_check_seconds() -> int:
    try:
        return max(1, int(SETTINGS.get("reconcile_check_seconds", 300)))
    except Exception:
        return 300


def get_reminders_check_seconds() -> int:
    try:
        return max(1, int(SETTINGS.get("reminders_check_seconds", 300)))
    except Exception:
        return 300


__all__ = [
    "SETTINGS",
    "get_setting",
    "get_slot_granularity_minutes",
    "get_business_tz",
    "get_webhook_url",
    "get_webhook_timeout_seconds",
    "get_slot_repair_max_attempts",
    "get_slot_repair_backoff_seconds",
    "get_reconcile_check_seconds",
    "get_reminders_check_seconds",
]
