"""Slot index, conflict guard and slot change feed.

The ``slot_reservations`` table is a denormalized index of which
(shop, date, time) keys are held. Bookings stay the authority: every read
here consults both and trusts the booking rows when they disagree. A claim
is a plain INSERT guarded by the partial unique index on the natural key,
so of two racing claims exactly one commits and the other gets an
IntegrityError that callers turn into ConflictError.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, time as dtime
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shopbook.app.core.db import get_session
from shopbook.app.core.errors import ConflictError, NotFoundError, to_transient
from shopbook.app.domain.models import ACTIVE_STATUSES, Booking, SlotReservation, SlotStatus
from shopbook.app.services.shared_services import format_date, format_time, parse_date, parse_time, utc_now
from shopbook.config import get_slot_repair_backoff_seconds, get_slot_repair_max_attempts

logger = logging.getLogger(__name__)


# =====================================================
# Change feed
# =====================================================
@dataclass(frozen=True)
class SlotDiff:
    """One change of occupancy: ``booked`` when claimed, ``cancelled`` when released."""

    shop_id: int
    day: date
    time: dtime
    booking_id: int
    status: SlotStatus

    def as_dict(self) -> dict[str, object]:
        return {
            "shop_id": self.shop_id,
            "date": format_date(self.day),
            "time": format_time(self.time),
            "booking_id": self.booking_id,
            "status": self.status.value,
        }


class SlotSubscription:
    """Handle returned by ``SlotFeed.subscribe``.

    Iterate it (``async for diff in sub``) to receive diffs in publish order.
    Closing the handle releases it from the feed and ends the iteration.
    """

    def __init__(self, feed: "SlotFeed", shop_id: int, day: date | None) -> None:
        self._feed = feed
        self.shop_id = shop_id
        self.day = day
        self._queue: asyncio.Queue[SlotDiff | None] = asyncio.Queue()
        self.closed = False

    def matches(self, diff: SlotDiff) -> bool:
        return diff.shop_id == self.shop_id and (self.day is None or diff.day == self.day)

    def _push(self, diff: SlotDiff | None) -> None:
        self._queue.put_nowait(diff)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self, timeout: float | None = None) -> SlotDiff | None:
        """Next diff, or None once the subscription is closed."""
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed._unsubscribe(self)
        self._push(None)

    def __aiter__(self) -> "SlotSubscription":
        return self

    async def __anext__(self) -> SlotDiff:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "SlotSubscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class SlotFeed:
    """In-process publisher of slot occupancy diffs.

    Owned by whoever composes the engine (the API app keeps one); lifecycle
    operations publish to it after their commit succeeded.
    """

    def __init__(self) -> None:
        self._subscriptions: list[SlotSubscription] = []

    def subscribe(self, shop_id: int, day: date | str | None = None) -> SlotSubscription:
        sub = SlotSubscription(self, int(shop_id), parse_date(day) if day is not None else None)
        self._subscriptions.append(sub)
        logger.debug("Slot feed subscription added: shop=%s day=%s", shop_id, day)
        return sub

    def _unsubscribe(self, sub: SlotSubscription) -> None:
        try:
            self._subscriptions.remove(sub)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, diffs: Iterable[SlotDiff]) -> None:
        for diff in diffs:
            for sub in list(self._subscriptions):
                if sub.matches(diff):
                    sub._push(diff)


def publish_diffs(feed: SlotFeed | None, diffs: Iterable[SlotDiff]) -> None:
    if feed is None:
        return
    feed.publish(diffs)


# =====================================================
# Slot index
# =====================================================
class SlotRepo:
    """Queries and writes on the slot reservation index.

    Every method takes the caller's session so the index changes commit
    together with the booking row they mirror.
    """

    @staticmethod
    async def booked_at(session, shop_id: int, day: date, at: dtime | None = None) -> list[SlotReservation]:
        stmt = select(SlotReservation).where(
            SlotReservation.shop_id == shop_id,
            SlotReservation.slot_date == day,
            SlotReservation.status == SlotStatus.BOOKED,
        )
        if at is not None:
            stmt = stmt.where(SlotReservation.slot_time == at)
        return list((await session.execute(stmt)).scalars().all())

    @staticmethod
    async def booked_for_booking(session, booking_id: int) -> list[SlotReservation]:
        stmt = select(SlotReservation).where(
            SlotReservation.booking_id == booking_id,
            SlotReservation.status == SlotStatus.BOOKED,
        )
        return list((await session.execute(stmt)).scalars().all())

    @staticmethod
    async def active_bookings_at(
        session,
        shop_id: int,
        day: date,
        at: dtime | None = None,
        exclude_booking_id: int | None = None,
    ) -> list[Booking]:
        stmt = select(Booking).where(
            Booking.shop_id == shop_id,
            Booking.selected_date == day,
            Booking.status.in_(tuple(ACTIVE_STATUSES)),
        )
        if at is not None:
            stmt = stmt.where(Booking.selected_time == at)
        if exclude_booking_id is not None:
            stmt = stmt.where(Booking.id != exclude_booking_id)
        return list((await session.execute(stmt)).scalars().all())

    @staticmethod
    async def claim(session, shop_id: int, day: date, at: dtime, booking_id: int) -> SlotDiff | None:
        """Insert the booked reservation for ``booking_id`` at the given key.

        Booked rows at the key whose booking no longer sits there are retired
        first. Returns None when the booking already holds the key. Raises
        ConflictError when the booking store shows another holder and
        IntegrityError when a concurrent claim won the index.
        """
        existing = await SlotRepo.booked_at(session, shop_id, day, at)
        if any(row.booking_id == booking_id for row in existing):
            return None
        if await SlotRepo.active_bookings_at(session, shop_id, day, at, exclude_booking_id=booking_id):
            # holder without an index row; the booking store wins
            raise ConflictError("slot is already booked", code="slot_unavailable")
        if existing:
            holders_here = select(Booking.id).where(
                Booking.shop_id == shop_id,
                Booking.selected_date == day,
                Booking.selected_time == at,
                Booking.status.in_(tuple(ACTIVE_STATUSES)),
            )
            res = await session.execute(
                update(SlotReservation)
                .where(
                    SlotReservation.shop_id == shop_id,
                    SlotReservation.slot_date == day,
                    SlotReservation.slot_time == at,
                    SlotReservation.status == SlotStatus.BOOKED,
                    SlotReservation.booking_id.notin_(holders_here),
                )
                .values(status=SlotStatus.CANCELLED, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount:
                logger.warning(
                    "Evicted %d stale reservation(s) at shop=%s %s %s", res.rowcount, shop_id, day, format_time(at)
                )
        session.add(SlotReservation(shop_id=shop_id, slot_date=day, slot_time=at, booking_id=booking_id))
        await session.flush()
        return SlotDiff(shop_id, day, at, booking_id, SlotStatus.BOOKED)

    @staticmethod
    async def retire(session, booking_id: int) -> list[SlotDiff]:
        """Mark every booked reservation of ``booking_id`` as cancelled."""
        diffs: list[SlotDiff] = []
        now = utc_now()
        for row in await SlotRepo.booked_for_booking(session, booking_id):
            row.status = SlotStatus.CANCELLED
            row.updated_at = now
            diffs.append(SlotDiff(row.shop_id, row.slot_date, row.slot_time, booking_id, SlotStatus.CANCELLED))
        if diffs:
            await session.flush()
        return diffs


# =====================================================
# Conflict guard
# =====================================================
@dataclass
class SlotCheck:
    available: bool
    holders: set[int] = field(default_factory=set)
    # bookings whose index rows disagree with the booking store
    drift: set[int] = field(default_factory=set)


async def inspect_slot(
    session,
    shop_id: int,
    day: date,
    at: dtime,
    exclude_booking_id: int | None = None,
) -> SlotCheck:
    """Compare the index and the booking store for one slot key."""
    index_rows = await SlotRepo.booked_at(session, shop_id, day, at)
    index_holders = {row.booking_id for row in index_rows if row.booking_id != exclude_booking_id}
    store_holders = {
        b.id for b in await SlotRepo.active_bookings_at(session, shop_id, day, at, exclude_booking_id)
    }
    drift = index_holders ^ store_holders
    if drift:
        logger.warning(
            "Slot index drift at shop=%s %s %s: index=%s store=%s",
            shop_id,
            day,
            format_time(at),
            sorted(index_holders),
            sorted(store_holders),
        )
    return SlotCheck(available=not store_holders, holders=store_holders, drift=drift)


async def check_availability(
    shop_id: int,
    day: date | str,
    at: dtime | str,
    exclude_booking_id: int | None = None,
    *,
    feed: SlotFeed | None = None,
) -> bool:
    """Return True when no active booking other than ``exclude_booking_id`` holds the slot.

    Advisory only: the claim inside the commit is what settles a race. Drift
    found on the way is repaired and the corrections are published on ``feed``.
    """
    target_day = parse_date(day)
    target_time = parse_time(at)
    try:
        async with get_session() as session:
            check = await inspect_slot(session, shop_id, target_day, target_time, exclude_booking_id)
    except SQLAlchemyError as exc:
        raise to_transient(exc, "check_availability") from exc
    await repair_many(check.drift, feed=feed)
    return check.available


async def occupied_times(session, shop_id: int, day: date, exclude_booking_id: int | None = None) -> set[dtime]:
    """Times held on ``day`` according to the booking store; index drift is logged."""
    store_times = {
        b.selected_time for b in await SlotRepo.active_bookings_at(session, shop_id, day, None, exclude_booking_id)
    }
    index_times = {
        row.slot_time
        for row in await SlotRepo.booked_at(session, shop_id, day)
        if row.booking_id != exclude_booking_id
    }
    if store_times != index_times:
        logger.warning(
            "Slot index drift for shop=%s on %s: only_index=%s only_store=%s",
            shop_id,
            day,
            sorted(format_time(t) for t in index_times - store_times),
            sorted(format_time(t) for t in store_times - index_times),
        )
    return store_times


# =====================================================
# Index repair
# =====================================================
async def _repair_once(booking_id: int) -> list[SlotDiff]:
    async with get_session() as session:
        booking = await session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError(f"booking {booking_id} not found", code="booking_not_found")
        active = booking.status in ACTIVE_STATUSES
        diffs: list[SlotDiff] = []
        kept = False
        now = utc_now()
        for row in await SlotRepo.booked_for_booking(session, booking_id):
            if active and not kept and row.slot_date == booking.selected_date and row.slot_time == booking.selected_time:
                kept = True
                continue
            row.status = SlotStatus.CANCELLED
            row.updated_at = now
            diffs.append(SlotDiff(row.shop_id, row.slot_date, row.slot_time, booking_id, SlotStatus.CANCELLED))
        if active and not kept:
            try:
                claimed = await SlotRepo.claim(
                    session, booking.shop_id, booking.selected_date, booking.selected_time, booking_id
                )
            except (IntegrityError, ConflictError) as exc:
                await session.rollback()
                raise ConflictError(
                    f"slot of booking {booking_id} is held by another booking", code="slot_unavailable"
                ) from exc
            if claimed is not None:
                diffs.append(claimed)
        if booking.needs_reconciliation:
            booking.needs_reconciliation = False
        await session.commit()
        return diffs


async def _flag_for_reconciliation(booking_id: int) -> None:
    try:
        async with get_session() as session:
            await session.execute(
                update(Booking).where(Booking.id == booking_id).values(needs_reconciliation=True)
            )
            await session.commit()
        logger.error("Booking #%s flagged for manual slot reconciliation", booking_id)
    except SQLAlchemyError as exc:
        logger.error("Could not flag booking #%s for reconciliation: %s", booking_id, exc)


async def repair_slot_index(booking_id: int, *, feed: SlotFeed | None = None) -> bool:
    """Bring the index in line with the booking row, retrying with backoff.

    On exhaustion, or when the booking's slot is held by another booking, the
    booking is flagged with ``needs_reconciliation``.
    """
    attempts = get_slot_repair_max_attempts()
    base_delay = get_slot_repair_backoff_seconds()
    for attempt in range(1, attempts + 1):
        try:
            diffs = await _repair_once(booking_id)
        except NotFoundError:
            logger.warning("Slot repair skipped: booking #%s does not exist", booking_id)
            return False
        except ConflictError as exc:
            logger.error("Slot repair for booking #%s impossible: %s", booking_id, exc)
            break
        except SQLAlchemyError as exc:
            logger.warning("Slot repair for booking #%s failed (attempt %d/%d): %s", booking_id, attempt, attempts, exc)
            if attempt < attempts:
                await asyncio.sleep(base_delay * (2 ** (attempt - 1)))
            continue
        if diffs:
            logger.info("Slot index repaired for booking #%s: %s", booking_id, [d.as_dict() for d in diffs])
        publish_diffs(feed, diffs)
        return True
    await _flag_for_reconciliation(booking_id)
    return False


async def repair_many(booking_ids: Iterable[int], *, feed: SlotFeed | None = None) -> int:
    repaired = 0
    for booking_id in sorted(set(booking_ids)):
        if await repair_slot_index(booking_id, feed=feed):
            repaired += 1
    return repaired


__all__ = [
    "SlotDiff",
    "SlotSubscription",
    "SlotFeed",
    "publish_diffs",
    "SlotRepo",
    "SlotCheck",
    "inspect_slot",
    "check_availability",
    "occupied_times",
    "repair_slot_index",
    "repair_many",
]
