"""Background worker sending appointment reminders to customers.

Confirmed bookings get up to four reminders: one week, 72 hours, 24 hours and
one hour before the appointment. Each reminder fires while the time left lies
inside the hour leading up to its lead time and is tracked by its own
``remind_*_sent`` flag on the booking, so every reminder goes out once.

start_reminders_worker returns an async callable that stops the worker gracefully.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from shopbook.app.core.db import get_session
from shopbook.app.core.notifications import NotificationDispatcher, NotificationEvent, get_dispatcher
from shopbook.app.domain.models import Booking, BookingStatus, NotificationType, Shop
from shopbook.app.services.booking_services import build_booking_details, webhook_payload
from shopbook.app.services.shared_services import appointment_datetime, get_shop_tz, utc_now
from shopbook.config import get_reminders_check_seconds

logger = logging.getLogger(__name__)

# label, lead time, booking flag, wording; tightest first
REMINDERS: tuple[tuple[str, timedelta, str, str], ...] = (
    ("1h", timedelta(hours=1), "remind_1h_sent", "in 1 hour"),
    ("24h", timedelta(hours=24), "remind_24h_sent", "tomorrow"),
    ("72h", timedelta(hours=72), "remind_72h_sent", "in 3 days"),
    ("1w", timedelta(weeks=1), "remind_1w_sent", "in 1 week"),
)
REMINDER_WINDOW = timedelta(hours=1)

_FLAGS = {label: flag for label, _, flag, _ in REMINDERS}
_WORDING = {label: wording for label, _, _, wording in REMINDERS}


def sent_reminders(booking: Booking) -> set[str]:
    return {label for label, flag in _FLAGS.items() if getattr(booking, flag)}


def due_reminder(starts_at: datetime, now: datetime, sent: set[str] | None = None) -> str | None:
    """Label of the reminder whose window contains ``now``, unless already sent."""
    sent = sent or set()
    left = starts_at - now
    for label, lead, _, _ in REMINDERS:
        if lead - REMINDER_WINDOW < left <= lead:
            return None if label in sent else label
    return None


async def _set_flag(booking_id: int, label: str, value: bool) -> bool:
    flag = _FLAGS[label]
    stmt = update(Booking).where(Booking.id == booking_id).values({flag: value})
    if value:
        # only the sweep that flips the flag sends the reminder
        stmt = stmt.where(Booking.status == BookingStatus.CONFIRMED, getattr(Booking, flag).is_(False))
    async with get_session() as session:
        res = await session.execute(stmt.execution_options(synchronize_session=False))
        await session.commit()
        return bool(res.rowcount)


async def _send_reminder(
    booking_id: int, label: str, now_utc: datetime, dispatcher: NotificationDispatcher | None
) -> bool:
    try:
        if not await _set_flag(booking_id, label, True):
            return False
        async with get_session() as session:
            booking = await session.get(Booking, booking_id)
            details = await build_booking_details(session, booking, now=now_utc)
    except SQLAlchemyError as e:
        logger.error("Could not prepare %s reminder for booking #%s: %s", label, booking_id, e)
        return False

    warnings = await (dispatcher or get_dispatcher()).fire_and_forget(
        NotificationEvent(
            type=NotificationType.APPOINTMENT_REMINDER,
            shop_id=details.shop_id,
            booking_id=booking_id,
            recipient="customer",
            title="Appointment reminder",
            message=(
                f"Your appointment at {details.shop_name} is {_WORDING[label]}: "
                f"{details.selected_date} at {details.selected_time}"
            ),
            payload=webhook_payload(details, reminder=label),
            webhook=True,
        )
    )
    if any(w.step == "notification_record" for w in warnings):
        logger.warning("Failed to record %s reminder for booking #%s; will retry", label, booking_id)
        try:
            await _set_flag(booking_id, label, False)
        except SQLAlchemyError as e:
            logger.error("Could not reset %s reminder flag of booking #%s: %s", label, booking_id, e)
        return False
    return True


async def remind_once(now: datetime | None = None, dispatcher: NotificationDispatcher | None = None) -> int:
    """Run one sweep and return how many reminders were sent."""
    now_utc = now or utc_now()
    longest = REMINDERS[-1][1]
    try:
        async with get_session() as session:
            # date bounds are padded a day each side for shop timezones
            stmt = (
                select(Booking, Shop)
                .join(Shop, Shop.id == Booking.shop_id)
                .where(
                    Booking.status == BookingStatus.CONFIRMED,
                    Booking.selected_date >= (now_utc - timedelta(days=1)).date(),
                    Booking.selected_date <= (now_utc + longest + timedelta(days=1)).date(),
                )
            )
            due: list[tuple[int, str]] = []
            for booking, shop in (await session.execute(stmt)).all():
                starts_at = appointment_datetime(booking.selected_date, booking.selected_time, get_shop_tz(shop))
                label = due_reminder(starts_at, now_utc, sent_reminders(booking))
                if label:
                    due.append((booking.id, label))
    except SQLAlchemyError as e:
        logger.error("Reminder sweep failed: %s", e)
        return 0

    count = 0
    for booking_id, label in due:
        if await _send_reminder(booking_id, label, now_utc, dispatcher):
            count += 1
    if count:
        logger.info("Sent %d appointment reminder(s)", count)
    return count


async def _run_loop(
    stop_event: asyncio.Event, interval_seconds: int, dispatcher: NotificationDispatcher | None
) -> None:
    while not stop_event.is_set():
        try:
            await remind_once(dispatcher=dispatcher)
        except Exception as e:
            logger.exception("Reminders worker iteration error: %s", e)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


async def start_reminders_worker(
    dispatcher: NotificationDispatcher | None = None,
    interval_seconds: int | None = None,
) -> Callable[[], Awaitable[None]]:
    """Start the reminders worker and return an async stop() function."""
    interval = int(interval_seconds or get_reminders_check_seconds())
    stop_event: asyncio.Event = asyncio.Event()
    task = asyncio.create_task(_run_loop(stop_event, interval, dispatcher), name="reminders-worker")

    async def _stop() -> None:
        stop_event.set()
        try:
            await asyncio.wait_for(task, timeout=5)
        except asyncio.TimeoutError:
            task.cancel()

    logger.info("Reminders worker started (interval=%ss)", interval)
    return _stop


async def stop_reminders_worker(stop_callable: Optional[Callable[[], Awaitable[None]]] = None) -> None:
    if stop_callable:
        await stop_callable()


__all__ = [
    "REMINDERS",
    "due_reminder",
    "sent_reminders",
    "remind_once",
    "start_reminders_worker",
    "stop_reminders_worker",
]
