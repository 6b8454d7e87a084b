"""Test configuration and shared fixtures.

Adds the repository root to sys.path so `import shopbook` works in CI where
the checkout directory may not be on PYTHONPATH by default. Every test that
touches the database gets its own SQLite file through the `db_url` fixture.
"""

from __future__ import annotations

import asyncio
import sys
from collections import Counter
from datetime import UTC, date, datetime, time, timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[3]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import select  # noqa: E402

from shopbook.app.core import db  # noqa: E402
from shopbook.app.domain.models import (  # noqa: E402
    ACTIVE_STATUSES,
    WEEKDAY_NAMES,
    Booking,
    SlotReservation,
    SlotStatus,
)
from shopbook.app.services import booking_services  # noqa: E402
from shopbook.app.services.availability_services import ShopRepo  # noqa: E402
from shopbook.config import SETTINGS  # noqa: E402

OPEN_ALL_WEEK = {name: {"open": "09:00", "close": "17:00"} for name in WEEKDAY_NAMES}


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setitem(SETTINGS, "slot_repair_backoff_seconds", 0)
    monkeypatch.setitem(SETTINGS, "slot_repair_max_attempts", 2)
    monkeypatch.setitem(SETTINGS, "notification_webhook_url", "")
    monkeypatch.setitem(SETTINGS, "timezone", "UTC")
    monkeypatch.setitem(SETTINGS, "run_reconciler", False)
    monkeypatch.setitem(SETTINGS, "db_auto_create", False)
    monkeypatch.setitem(SETTINGS, "run_reminders", False)
    monkeypatch.setitem(SETTINGS, "log_file", "")


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    url = f"sqlite+aiosqlite:///{tmp_path / 'shopbook.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    db._reset_engine_for_tests()
    asyncio.run(db.init_db())
    yield url
    asyncio.run(db.dispose_engine())


@pytest.fixture
def future_day() -> date:
    return date.today() + timedelta(days=14)


@pytest.fixture
def past_day() -> date:
    return date.today() - timedelta(days=3)


@pytest.fixture
def before(past_day) -> datetime:
    """A clock reading from before ``past_day`` so bookings can be placed there."""
    return datetime.combine(past_day - timedelta(days=1), time(8, 0), tzinfo=UTC)


@pytest.fixture
def shop(db_url):
    return asyncio.run(
        ShopRepo.create(
            "Cut & Go",
            email="owner@cutgo.test",
            owner_id="owner-1",
            timezone="UTC",
            slot_granularity_minutes=30,
            availability=OPEN_ALL_WEEK,
        )
    )


@pytest.fixture
def book(shop, future_day):
    """Async helper creating a booking in the default shop and returning its details."""

    async def _book(
        at: str = "10:00",
        *,
        day: date | None = None,
        customer_id: str = "cust-1",
        confirm: bool = False,
        now: datetime | None = None,
        services=None,
        **kwargs,
    ):
        result = await booking_services.create_booking(
            shop.id,
            customer_id,
            day or future_day,
            at,
            services or [{"name": "Haircut", "price_cents": 2500}],
            now=now,
            **kwargs,
        )
        if confirm:
            result = await booking_services.confirm_booking(result.booking.booking_id, now=now)
        return result.booking

    return _book


@pytest.fixture
def check_invariants(db_url):
    """Async helper asserting both slot index invariants over the whole database."""

    async def _check() -> None:
        async with db.get_session() as session:
            booked = (
                await session.execute(select(SlotReservation).where(SlotReservation.status == SlotStatus.BOOKED))
            ).scalars().all()
            bookings = (await session.execute(select(Booking))).scalars().all()
        per_key = Counter((r.shop_id, r.slot_date, r.slot_time) for r in booked)
        assert all(n <= 1 for n in per_key.values()), per_key
        for b in bookings:
            matching = [
                r
                for r in booked
                if r.booking_id == b.id and (r.slot_date, r.slot_time) == (b.selected_date, b.selected_time)
            ]
            if b.status in ACTIVE_STATUSES:
                assert len(matching) == 1, (b.id, b.status)
                assert all(r.booking_id != b.id or r in matching for r in booked)
            else:
                assert not [r for r in booked if r.booking_id == b.id], b.id

    return _check
