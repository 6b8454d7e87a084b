from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time as dtime
from typing import Any, Mapping

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from shopbook.app.core.db import get_session
from shopbook.app.core.errors import NotFoundError, ValidationError, to_transient
from shopbook.app.domain.models import Shop, ShopHours, ShopRatingAggregate, WEEKDAY_NAMES
from shopbook.app.services.shared_services import (
    _minutes_to_hm,
    _parse_hm_to_minutes,
    appointment_datetime,
    format_time,
    get_shop_tz,
    parse_date,
    parse_time,
    utc_now,
)
from shopbook.config import get_slot_granularity_minutes

logger = logging.getLogger(__name__)

WeeklyAvailability = Mapping[str, Mapping[str, str] | None]


def _weekday_index(name: str) -> int:
    lowered = str(name).strip().lower()
    for idx, day_name in enumerate(WEEKDAY_NAMES):
        if day_name.lower() == lowered:
            return idx
    raise ValidationError(f"unknown weekday {name!r}", code="invalid_weekday")


def generate_slots(weekly_availability: WeeklyAvailability, day: date, granularity_minutes: int) -> list[str]:
    """Return the bookable 'HH:MM' slots of ``day`` in ascending order.

    Slots run from the opening time up to and including the closing time, so a
    shop open 09:00-17:00 at 30 minute steps offers 17 slots with the last one
    starting at 17:00. A weekday without an entry means the shop is closed.
    """
    try:
        step = int(granularity_minutes)
    except (TypeError, ValueError) as exc:
        raise ValidationError("granularity must be a positive number of minutes", code="invalid_granularity") from exc
    if step <= 0:
        raise ValidationError("granularity must be a positive number of minutes", code="invalid_granularity")

    day_name = WEEKDAY_NAMES[day.weekday()]
    hours = weekly_availability.get(day_name)
    if hours is None:
        # tolerate lowercase keys coming from JSON clients
        hours = weekly_availability.get(day_name.lower())
    if not hours:
        return []

    open_min = _parse_hm_to_minutes(hours["open"])
    close_min = _parse_hm_to_minutes(hours["close"])
    slots: list[str] = []
    current = open_min
    while current <= close_min:
        slots.append(_minutes_to_hm(current))
        current += step
    return slots


def normalize_availability(availability: WeeklyAvailability) -> dict[str, dict[str, str]]:
    """Validate an owner-submitted weekly schedule and return it in canonical form."""
    result: dict[str, dict[str, str]] = {}
    for name, hours in availability.items():
        idx = _weekday_index(name)
        if not hours:
            continue
        try:
            open_raw, close_raw = hours["open"], hours["close"]
        except (KeyError, TypeError) as exc:
            raise ValidationError(f"{name}: open and close are required", code="invalid_hours") from exc
        open_min = _parse_hm_to_minutes(open_raw)
        close_min = _parse_hm_to_minutes(close_raw)
        if open_min >= close_min:
            raise ValidationError(f"{name}: open must be before close", code="invalid_hours")
        result[WEEKDAY_NAMES[idx]] = {"open": _minutes_to_hm(open_min), "close": _minutes_to_hm(close_min)}
    return result


async def load_weekly_availability(session, shop_id: int) -> dict[str, dict[str, str]]:
    rows = (
        await session.execute(select(ShopHours).where(ShopHours.shop_id == shop_id).order_by(ShopHours.weekday))
    ).scalars().all()
    return {
        WEEKDAY_NAMES[row.weekday]: {"open": format_time(row.open_time), "close": format_time(row.close_time)}
        for row in rows
    }


def shop_granularity(shop: Shop) -> int:
    return int(shop.slot_granularity_minutes or get_slot_granularity_minutes())


class ShopRepo:
    """Repository for shops and their weekly hours."""

    @staticmethod
    async def create(
        name: str,
        *,
        email: str | None = None,
        owner_id: str | None = None,
        timezone: str | None = None,
        slot_granularity_minutes: int | None = None,
        availability: WeeklyAvailability | None = None,
    ) -> Shop:
        if not str(name or "").strip():
            raise ValidationError("shop name is required", code="invalid_shop")
        hours = normalize_availability(availability or {})
        async with get_session() as session:
            shop = Shop(
                name=str(name).strip(),
                email=email,
                owner_id=owner_id,
                timezone=timezone,
                slot_granularity_minutes=slot_granularity_minutes,
            )
            session.add(shop)
            await session.flush()
            for day_name, window in hours.items():
                session.add(
                    ShopHours(
                        shop_id=shop.id,
                        weekday=_weekday_index(day_name),
                        open_time=parse_time(window["open"]),
                        close_time=parse_time(window["close"]),
                    )
                )
            # aggregate row exists from the start so ratings only ever increment it
            session.add(ShopRatingAggregate(shop_id=shop.id))
            await session.commit()
            logger.info("Created shop #%s (%s)", shop.id, shop.name)
            return shop

    @staticmethod
    async def get(shop_id: int) -> Shop:
        try:
            async with get_session() as session:
                shop = await session.get(Shop, shop_id)
        except SQLAlchemyError as exc:
            raise to_transient(exc, "get_shop") from exc
        if shop is None:
            raise NotFoundError(f"shop {shop_id} not found", code="shop_not_found")
        return shop


async def get_shop_availability(shop_id: int) -> dict[str, dict[str, str]]:
    try:
        async with get_session() as session:
            if await session.get(Shop, shop_id) is None:
                raise NotFoundError(f"shop {shop_id} not found", code="shop_not_found")
            return await load_weekly_availability(session, shop_id)
    except SQLAlchemyError as exc:
        raise to_transient(exc, "get_shop_availability") from exc


async def set_shop_availability(shop_id: int, availability: WeeklyAvailability) -> dict[str, dict[str, str]]:
    """Replace the shop's weekly hours. Existing bookings are left untouched."""
    hours = normalize_availability(availability)
    try:
        async with get_session() as session:
            if await session.get(Shop, shop_id) is None:
                raise NotFoundError(f"shop {shop_id} not found", code="shop_not_found")
            await session.execute(delete(ShopHours).where(ShopHours.shop_id == shop_id))
            for day_name, window in hours.items():
                session.add(
                    ShopHours(
                        shop_id=shop_id,
                        weekday=_weekday_index(day_name),
                        open_time=parse_time(window["open"]),
                        close_time=parse_time(window["close"]),
                    )
                )
            await session.commit()
    except SQLAlchemyError as exc:
        raise to_transient(exc, "set_shop_availability") from exc
    logger.info("Availability updated for shop #%s: %s", shop_id, sorted(hours))
    return hours


@dataclass
class DaySlot:
    time: str
    booked: bool
    # start lies at or before the reference instant
    past: bool = False

    @property
    def available(self) -> bool:
        return not (self.booked or self.past)

    def as_dict(self) -> dict[str, Any]:
        return {"time": self.time, "booked": self.booked, "past": self.past, "available": self.available}


async def get_day_slots(shop_id: int, day: date | str, *, now: datetime | None = None) -> list[DaySlot]:
    """Every slot the shop offers on ``day`` with booked and past flags.

    A slot is past when its start in the shop's timezone is not after ``now``;
    such slots cannot be booked even when nobody holds them.
    """
    from shopbook.app.services.slot_services import occupied_times

    target = parse_date(day)
    try:
        async with get_session() as session:
            shop = await session.get(Shop, shop_id)
            if shop is None:
                raise NotFoundError(f"shop {shop_id} not found", code="shop_not_found")
            weekly = await load_weekly_availability(session, shop_id)
            slots = generate_slots(weekly, target, shop_granularity(shop))
            if not slots:
                return []
            taken: set[dtime] = await occupied_times(session, shop_id, target)
            tz = get_shop_tz(shop)
    except SQLAlchemyError as exc:
        raise to_transient(exc, "get_day_slots") from exc
    now = now or utc_now()
    taken_labels = {format_time(t) for t in taken}
    return [
        DaySlot(
            time=label,
            booked=label in taken_labels,
            past=appointment_datetime(target, parse_time(label), tz) <= now,
        )
        for label in slots
    ]


__all__ = [
    "generate_slots",
    "normalize_availability",
    "load_weekly_availability",
    "shop_granularity",
    "ShopRepo",
    "get_shop_availability",
    "set_shop_availability",
    "DaySlot",
    "get_day_slots",
]
