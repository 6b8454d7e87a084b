"""Background worker that keeps the slot index in line with the bookings.

Each sweep collects bookings flagged ``needs_reconciliation`` plus any drift
between the booking rows and the booked slot reservations, and runs the
regular slot repair on them.

start_reconciliation_worker returns an async callable that stops the worker gracefully.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy import and_, exists, or_, select
from sqlalchemy.exc import SQLAlchemyError

from shopbook.app.core.db import get_session
from shopbook.app.domain.models import ACTIVE_STATUSES, Booking, SlotReservation, SlotStatus
from shopbook.app.services.slot_services import SlotFeed, repair_many
from shopbook.config import get_reconcile_check_seconds

logger = logging.getLogger(__name__)


async def find_drifted_booking_ids(session) -> set[int]:
    active = tuple(ACTIVE_STATUSES)
    flagged = select(Booking.id).where(Booking.needs_reconciliation.is_(True))

    # live bookings without a booked reservation at their current slot
    matching_row = exists().where(
        SlotReservation.booking_id == Booking.id,
        SlotReservation.status == SlotStatus.BOOKED,
        SlotReservation.slot_date == Booking.selected_date,
        SlotReservation.slot_time == Booking.selected_time,
    )
    unindexed = select(Booking.id).where(Booking.status.in_(active), ~matching_row)

    # booked reservations whose booking was cancelled or moved
    stale = (
        select(SlotReservation.booking_id)
        .join(Booking, Booking.id == SlotReservation.booking_id)
        .where(
            SlotReservation.status == SlotStatus.BOOKED,
            or_(
                Booking.status.notin_(active),
                ~and_(
                    Booking.selected_date == SlotReservation.slot_date,
                    Booking.selected_time == SlotReservation.slot_time,
                ),
            ),
        )
    )

    ids: set[int] = set()
    for stmt in (flagged, unindexed, stale):
        ids.update(int(x) for x in (await session.execute(stmt)).scalars().all())
    return ids


async def reconcile_once(feed: SlotFeed | None = None) -> int:
    """Run one sweep and return how many bookings were repaired."""
    try:
        async with get_session() as session:
            ids = await find_drifted_booking_ids(session)
    except SQLAlchemyError as e:
        logger.error("Reconciliation sweep failed: %s", e)
        return 0
    if not ids:
        return 0
    logger.info("Reconciliation sweep found %d booking(s) to repair: %s", len(ids), sorted(ids))
    repaired = await repair_many(ids, feed=feed)
    if repaired < len(ids):
        logger.warning("Reconciliation left %d booking(s) flagged for manual review", len(ids) - repaired)
    return repaired


async def _run_loop(stop_event: asyncio.Event, interval_seconds: int, feed: SlotFeed | None) -> None:
    while not stop_event.is_set():
        try:
            await reconcile_once(feed)
        except Exception as e:
            logger.exception("Reconciliation worker iteration error: %s", e)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


async def start_reconciliation_worker(
    feed: SlotFeed | None = None,
    interval_seconds: int | None = None,
) -> Callable[[], Awaitable[None]]:
    """Start the reconciliation worker and return an async stop() function."""
    interval = int(interval_seconds or get_reconcile_check_seconds())
    stop_event: asyncio.Event = asyncio.Event()
    task = asyncio.create_task(_run_loop(stop_event, interval, feed), name="reconciliation-worker")

    async def _stop() -> None:
        stop_event.set()
        try:
            await asyncio.wait_for(task, timeout=5)
        except asyncio.TimeoutError:
            task.cancel()

    logger.info("Reconciliation worker started (interval=%ss)", interval)
    return _stop


async def stop_reconciliation_worker(stop_callable: Optional[Callable[[], Awaitable[None]]] = None) -> None:
    if stop_callable:
        await stop_callable()


__all__ = [
    "find_drifted_booking_ids",
    "reconcile_once",
    "start_reconciliation_worker",
    "stop_reconciliation_worker",
]
