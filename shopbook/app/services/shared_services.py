from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time as dtime
from typing import Any, Iterable
from zoneinfo import ZoneInfo

from shopbook.app.core.errors import ValidationError
from shopbook.config import get_business_tz

logger = logging.getLogger(__name__)


# ---------------- Time utilities (shared) ---------------- #
def _parse_hm_to_minutes(hm: str) -> int:
    """Parse 'HH:MM' into minutes since midnight (raises ValidationError)."""
    try:
        hh, mm = str(hm).strip().split(":")
        h, m = int(hh), int(mm)
    except Exception as exc:
        raise ValidationError(f"invalid time {hm!r}, expected HH:MM", code="invalid_time") from exc
    if not (0 <= h <= 23 and 0 <= m <= 59):
        raise ValidationError(f"invalid time {hm!r}, expected HH:MM", code="invalid_time")
    return h * 60 + m


def _minutes_to_hm(minutes: int) -> str:
    minutes = max(0, min(24 * 60 - 1, int(minutes)))
    h = minutes // 60
    m = minutes % 60
    return f"{h:02d}:{m:02d}"


def parse_time(value: str | dtime) -> dtime:
    if isinstance(value, dtime):
        return value.replace(second=0, microsecond=0)
    minutes = _parse_hm_to_minutes(value)
    return dtime(minutes // 60, minutes % 60)


def format_time(value: dtime | None) -> str | None:
    if value is None:
        return None
    return f"{value.hour:02d}:{value.minute:02d}"


def parse_date(value: str | date) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except Exception as exc:
        raise ValidationError(f"invalid date {value!r}, expected YYYY-MM-DD", code="invalid_date") from exc


def format_date(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def utc_now() -> datetime:
    """Return current time as an aware UTC datetime."""
    return datetime.now(UTC)


def get_shop_tz(shop: Any | None) -> ZoneInfo:
    tz_name = getattr(shop, "timezone", None)
    if tz_name:
        try:
            return ZoneInfo(str(tz_name))
        except Exception:
            logger.warning("Shop %s has invalid timezone %r", getattr(shop, "id", None), tz_name)
    return get_business_tz()


def appointment_datetime(day: date, at: dtime, tz: ZoneInfo) -> datetime:
    """Aware UTC instant of a wall-clock slot in the shop's timezone."""
    return datetime.combine(day, at, tzinfo=tz).astimezone(UTC)


# ---------------- Money ---------------- #
def format_price_plain(cents: int | None) -> str:
    """Webhook payload price: '25.00' without currency."""
    return f"{int(cents or 0) / 100:.2f}"


def total_price_cents(prices: Iterable[int | None]) -> int:
    return sum(int(p or 0) for p in prices)


__all__ = [
    "parse_time",
    "format_time",
    "parse_date",
    "format_date",
    "utc_now",
    "get_shop_tz",
    "appointment_datetime",
    "format_price_plain",
    "total_price_cents",
]
