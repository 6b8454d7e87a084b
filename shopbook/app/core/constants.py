from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def _normalize_currency(code: str | None) -> str | None:
    if not code:
        return None
    cleaned = str(code).strip().upper()
    if len(cleaned) == 3 and cleaned.isalpha():
        return cleaned
    return None


# Slot grid
DEFAULT_SLOT_GRANULARITY_MINUTES: int = _env_int("SLOT_GRANULARITY_MINUTES", 30)

# Timezone used for shops that do not carry their own
DEFAULT_BUSINESS_TIMEZONE: str = os.getenv("BUSINESS_TIMEZONE", "Europe/Berlin")

DEFAULT_CURRENCY: str = _normalize_currency(os.getenv("DEFAULT_CURRENCY")) or "EUR"

# Downstream webhook (empty URL disables delivery)
NOTIFICATION_WEBHOOK_URL: str = os.getenv("NOTIFICATION_WEBHOOK_URL", "").strip()
WEBHOOK_TIMEOUT_SECONDS: float = _env_float("WEBHOOK_TIMEOUT_SECONDS", 10.0)

# Slot index repair
SLOT_REPAIR_MAX_ATTEMPTS: int = max(1, _env_int("SLOT_REPAIR_MAX_ATTEMPTS", 3))
SLOT_REPAIR_BACKOFF_SECONDS: float = max(0.0, _env_float("SLOT_REPAIR_BACKOFF_SECONDS", 0.2))

# Worker intervals
RECONCILE_CHECK_SECONDS_RAW: str = os.getenv("RECONCILE_CHECK_SECONDS", "300")
try:
    RECONCILE_CHECK_SECONDS: int = int(RECONCILE_CHECK_SECONDS_RAW)
    RECONCILE_CHECK_SECONDS_INVALID: bool = False
except ValueError:
    RECONCILE_CHECK_SECONDS = 300
    RECONCILE_CHECK_SECONDS_INVALID = True

REMINDERS_CHECK_SECONDS: int = max(1, _env_int("REMINDERS_CHECK_SECONDS", 300))

# Feature flags / logging
LOG_LEVEL_NAME: str = os.getenv("LOG_LEVEL", "INFO").strip().upper()
# WARNING and above is also appended here (empty disables the file)
LOG_FILE: str = os.getenv("LOG_FILE", "shopbook.log").strip()
RUN_REMINDERS_ENABLED: bool = _env_bool("RUN_REMINDERS", True)
RUN_RECONCILER_ENABLED: bool = _env_bool("RUN_RECONCILER", True)
# Create missing tables on API startup (alembic is the normal path)
DB_AUTO_CREATE_ENABLED: bool = _env_bool("DB_AUTO_CREATE", False)

__all__ = [
    "DEFAULT_SLOT_GRANULARITY_MINUTES",
    "DEFAULT_BUSINESS_TIMEZONE",
    "DEFAULT_CURRENCY",
    "NOTIFICATION_WEBHOOK_URL",
    "WEBHOOK_TIMEOUT_SECONDS",
    "SLOT_REPAIR_MAX_ATTEMPTS",
    "SLOT_REPAIR_BACKOFF_SECONDS",
    "RECONCILE_CHECK_SECONDS_RAW",
    "RECONCILE_CHECK_SECONDS",
    "RECONCILE_CHECK_SECONDS_INVALID",
    "REMINDERS_CHECK_SECONDS",
    "LOG_LEVEL_NAME",
    "LOG_FILE",
    "RUN_REMINDERS_ENABLED",
    "RUN_RECONCILER_ENABLED",
    "DB_AUTO_CREATE_ENABLED",
]
