"""Booking lifecycle: create, confirm, cancel, reschedule and update.

Every transition follows the same shape inside one session: guard reads
first, then a compare-and-swap UPDATE on the booking row (or the INSERT of a
new one), then the slot index changes, then a single commit. Notifications
and the slot feed run only after the commit succeeded; their failures come
back as warnings on the result and never undo the transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime
from typing import Any, Iterable, Mapping, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shopbook.app.core.constants import DEFAULT_CURRENCY
from shopbook.app.core.db import get_session
from shopbook.app.core.errors import (
    ConflictError,
    NotFoundError,
    PartialFailure,
    ValidationError,
    to_transient,
)
from shopbook.app.core.notifications import NotificationDispatcher, NotificationEvent, get_dispatcher
from shopbook.app.domain.models import (
    ACTIVE_STATUSES,
    Booking,
    BookingItem,
    BookingStatus,
    CancelActor,
    NotificationType,
    Shop,
)
from shopbook.app.services.availability_services import generate_slots, load_weekly_availability, shop_granularity
from shopbook.app.services.shared_services import (
    appointment_datetime,
    format_date,
    format_price_plain,
    format_time,
    get_shop_tz,
    parse_date,
    parse_time,
    total_price_cents,
    utc_now,
)
from shopbook.app.services.slot_services import (
    SlotDiff,
    SlotFeed,
    SlotRepo,
    inspect_slot,
    publish_diffs,
    repair_many,
)
from shopbook.config import get_business_tz

logger = logging.getLogger(__name__)


# ---------------- Derived status ---------------- #
def effective_status(booking: Booking, now: datetime | None = None, *, tz: ZoneInfo | None = None) -> BookingStatus:
    """Stored status, or ``completed`` once a live appointment's start has passed."""
    if booking.status == BookingStatus.CANCELLED:
        return BookingStatus.CANCELLED
    now = now or utc_now()
    starts_at = appointment_datetime(booking.selected_date, booking.selected_time, tz or get_business_tz())
    if starts_at < now:
        return BookingStatus.COMPLETED
    return booking.status


def _is_past(booking: Booking, tz: ZoneInfo, now: datetime) -> bool:
    return appointment_datetime(booking.selected_date, booking.selected_time, tz) < now


# ---------------- Presentation ---------------- #
@dataclass
class BookingDetails:
    booking_id: int
    shop_id: int
    status: str
    stored_status: str
    customer_id: str
    selected_date: str
    selected_time: str
    shop_name: str | None = None
    shop_email: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    employee_name: str | None = None
    notes: str | None = None
    previous_date: str | None = None
    previous_time: str | None = None
    services: list[dict[str, Any]] = field(default_factory=list)
    total_price_cents: int = 0
    cancellation_reason: str | None = None
    cancelled_by: str | None = None
    is_rated: bool = False
    rating_id: int | None = None
    needs_reconciliation: bool = False

    @property
    def total_price(self) -> str:
        return format_price_plain(self.total_price_cents)

    def as_dict(self) -> dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "shop_id": self.shop_id,
            "shop_name": self.shop_name,
            "status": self.status,
            "stored_status": self.stored_status,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "employee_name": self.employee_name,
            "notes": self.notes,
            "selected_date": self.selected_date,
            "selected_time": self.selected_time,
            "previous_date": self.previous_date,
            "previous_time": self.previous_time,
            "services": list(self.services),
            "total_price": self.total_price,
            "cancellation_reason": self.cancellation_reason,
            "cancelled_by": self.cancelled_by,
            "is_rated": self.is_rated,
            "rating_id": self.rating_id,
            "needs_reconciliation": self.needs_reconciliation,
        }


async def build_booking_details(
    session,
    booking: Booking,
    *,
    shop: Shop | None = None,
    now: datetime | None = None,
) -> BookingDetails:
    if shop is None:
        shop = await session.get(Shop, booking.shop_id)
    items = (
        await session.execute(
            select(BookingItem).where(BookingItem.booking_id == booking.id).order_by(BookingItem.position)
        )
    ).scalars().all()
    services = [{"name": item.service_name, "price_cents": int(item.price_cents or 0)} for item in items]
    return BookingDetails(
        booking_id=booking.id,
        shop_id=booking.shop_id,
        status=effective_status(booking, now, tz=get_shop_tz(shop)).value,
        stored_status=booking.status.value,
        customer_id=booking.customer_id,
        selected_date=format_date(booking.selected_date),
        selected_time=format_time(booking.selected_time),
        shop_name=getattr(shop, "name", None),
        shop_email=getattr(shop, "email", None),
        customer_name=booking.customer_name,
        customer_email=booking.customer_email,
        employee_name=booking.employee_name,
        notes=booking.notes,
        previous_date=format_date(booking.previous_date),
        previous_time=format_time(booking.previous_time),
        services=services,
        total_price_cents=total_price_cents(s["price_cents"] for s in services),
        cancellation_reason=booking.cancellation_reason,
        cancelled_by=booking.cancelled_by.value if booking.cancelled_by else None,
        is_rated=bool(booking.is_rated),
        rating_id=booking.rating_id,
        needs_reconciliation=bool(booking.needs_reconciliation),
    )


@dataclass
class LifecycleResult:
    """Outcome of a lifecycle operation.

    ``changed`` is False for idempotent no-ops (cancelling a cancelled booking,
    confirming a confirmed one). ``warnings`` lists side effects that failed
    after the commit.
    """

    booking: BookingDetails
    changed: bool = True
    warnings: list[PartialFailure] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "booking": self.booking.as_dict(),
            "changed": self.changed,
            "warnings": [w.as_dict() for w in self.warnings],
        }


def webhook_payload(details: BookingDetails, **extra: Any) -> dict[str, Any]:
    """Fields the downstream webhook expects for any booking event."""
    payload = {
        "customerId": details.customer_id,
        "customerName": details.customer_name,
        "customerEmail": details.customer_email,
        "shopId": details.shop_id,
        "shopName": details.shop_name,
        "shopEmail": details.shop_email,
        "selectedDate": details.selected_date,
        "selectedTime": details.selected_time,
        "services": [s["name"] for s in details.services],
        "totalPrice": details.total_price,
        "currency": DEFAULT_CURRENCY,
    }
    payload.update({k: v for k, v in extra.items() if v is not None})
    return payload


# ---------------- Internal helpers ---------------- #
async def _load_booking(session, booking_id: int) -> Booking:
    booking = await session.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError(f"booking {booking_id} not found", code="booking_not_found")
    return booking


async def _load_shop(session, shop_id: int) -> Shop:
    shop = await session.get(Shop, shop_id)
    if shop is None:
        raise NotFoundError(f"shop {shop_id} not found", code="shop_not_found")
    return shop


async def _ensure_offered(session, shop: Shop, day: date, at: dtime, tz: ZoneInfo, now: datetime) -> None:
    weekly = await load_weekly_availability(session, shop.id)
    if format_time(at) not in generate_slots(weekly, day, shop_granularity(shop)):
        raise ValidationError(
            f"{format_date(day)} {format_time(at)} is not offered by shop {shop.id}", code="slot_not_offered"
        )
    if appointment_datetime(day, at, tz) <= now:
        raise ValidationError("slot lies in the past", code="slot_in_past")


async def _claim_or_conflict(session, shop_id: int, day: date, at: dtime, booking_id: int) -> SlotDiff | None:
    try:
        return await SlotRepo.claim(session, shop_id, day, at, booking_id)
    except (IntegrityError, ConflictError) as exc:
        await session.rollback()
        logger.info(
            "Booking #%s lost slot %s %s at shop #%s to a concurrent booking",
            booking_id,
            format_date(day),
            format_time(at),
            shop_id,
        )
        raise ConflictError("slot is already booked", code="slot_unavailable") from exc


async def _commit(session, context: str) -> None:
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        if isinstance(exc, IntegrityError):
            raise ConflictError("slot is already booked", code="slot_unavailable") from exc
        raise to_transient(exc, context) from exc


async def _notify(dispatcher: NotificationDispatcher | None, event: NotificationEvent) -> list[PartialFailure]:
    return await (dispatcher or get_dispatcher()).fire_and_forget(event)


def _normalize_services(services: Sequence[Mapping[str, Any] | str]) -> list[tuple[str, int]]:
    result: list[tuple[str, int]] = []
    for item in services or ():
        if isinstance(item, str):
            name, price = item, 0
        else:
            name = item.get("name") or item.get("service_name")
            price = item.get("price_cents", 0)
        name = str(name or "").strip()
        if not name:
            raise ValidationError("service name is required", code="invalid_services")
        try:
            price_cents = int(price or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"invalid price for {name!r}", code="invalid_services") from exc
        if price_cents < 0:
            raise ValidationError(f"invalid price for {name!r}", code="invalid_services")
        result.append((name, price_cents))
    if not result:
        raise ValidationError("at least one service is required", code="invalid_services")
    return result


def _clean_notes(notes: str | None) -> str | None:
    text = str(notes or "").strip()
    return text or None


async def _repair_drift(drift: Iterable[int], feed: SlotFeed | None) -> None:
    drift = set(drift)
    if drift:
        await repair_many(drift, feed=feed)


# ---------------- Operations ---------------- #
async def create_booking(
    shop_id: int,
    customer_id: str,
    day: date | str,
    at: dtime | str,
    services: Sequence[Mapping[str, Any] | str],
    *,
    customer_name: str | None = None,
    customer_email: str | None = None,
    employee_id: str | None = None,
    employee_name: str | None = None,
    notes: str | None = None,
    dispatcher: NotificationDispatcher | None = None,
    feed: SlotFeed | None = None,
    now: datetime | None = None,
) -> LifecycleResult:
    """Create a pending booking holding the requested slot.

    The booking row, its service items and the slot reservation commit
    together. Raises ValidationError when the slot is not offered or lies in
    the past and ConflictError when it is held by another booking.
    """
    if not str(customer_id or "").strip():
        raise ValidationError("customer id is required", code="invalid_customer")
    target_day = parse_date(day)
    target_time = parse_time(at)
    items = _normalize_services(services)
    now = now or utc_now()
    drift: set[int] = set()
    try:
        async with get_session() as session:
            shop = await _load_shop(session, shop_id)
            await _ensure_offered(session, shop, target_day, target_time, get_shop_tz(shop), now)
            check = await inspect_slot(session, shop_id, target_day, target_time)
            drift = check.drift
            if not check.available:
                raise ConflictError("slot is already booked", code="slot_unavailable")

            booking = Booking(
                shop_id=shop_id,
                customer_id=str(customer_id).strip(),
                customer_name=customer_name,
                customer_email=customer_email,
                status=BookingStatus.PENDING,
                selected_date=target_day,
                selected_time=target_time,
                employee_id=employee_id,
                employee_name=employee_name,
                notes=_clean_notes(notes),
                created_at=now,
                last_modified=now,
            )
            session.add(booking)
            await session.flush()
            for position, (name, price_cents) in enumerate(items):
                session.add(
                    BookingItem(booking_id=booking.id, service_name=name, price_cents=price_cents, position=position)
                )
            diff = await _claim_or_conflict(session, shop_id, target_day, target_time, booking.id)
            await _commit(session, "create_booking")
            details = await build_booking_details(session, booking, shop=shop, now=now)
    except SQLAlchemyError as exc:
        raise to_transient(exc, "create_booking") from exc
    finally:
        await _repair_drift(drift, feed)

    logger.info(
        "Booking #%s created: shop=%s customer=%s %s %s",
        details.booking_id,
        shop_id,
        details.customer_id,
        details.selected_date,
        details.selected_time,
    )
    publish_diffs(feed, [diff] if diff else [])
    warnings = await _notify(
        dispatcher,
        NotificationEvent(
            type=NotificationType.NEW_BOOKING,
            shop_id=shop_id,
            booking_id=details.booking_id,
            recipient="shop",
            title="New booking",
            message=(
                f"{details.customer_name or details.customer_id} booked "
                f"{details.selected_date} {details.selected_time}"
            ),
            payload=webhook_payload(details),
            webhook=True,
        ),
    )
    return LifecycleResult(details, True, warnings)


async def confirm_booking(
    booking_id: int,
    *,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> LifecycleResult:
    """Move a pending booking to confirmed. Confirming twice is a no-op."""
    now = now or utc_now()
    try:
        async with get_session() as session:
            booking = await _load_booking(session, booking_id)
            shop = await _load_shop(session, booking.shop_id)
            tz = get_shop_tz(shop)
            if booking.status == BookingStatus.CONFIRMED:
                return LifecycleResult(await build_booking_details(session, booking, shop=shop, now=now), False)
            if booking.status == BookingStatus.CANCELLED:
                raise ValidationError("booking is cancelled", code="booking_cancelled")
            if _is_past(booking, tz, now):
                raise ValidationError("booking is already completed", code="booking_completed")

            res = await session.execute(
                update(Booking)
                .where(Booking.id == booking_id, Booking.status == BookingStatus.PENDING)
                .values(status=BookingStatus.CONFIRMED, last_modified=now)
                .execution_options(synchronize_session=False)
            )
            if not res.rowcount:
                await session.rollback()
                await session.refresh(booking)
                if booking.status == BookingStatus.CONFIRMED:
                    return LifecycleResult(await build_booking_details(session, booking, shop=shop, now=now), False)
                raise ValidationError(
                    f"booking changed concurrently (now {booking.status.value})", code="invalid_transition"
                )
            await _commit(session, "confirm_booking")
            await session.refresh(booking)
            details = await build_booking_details(session, booking, shop=shop, now=now)
    except SQLAlchemyError as exc:
        raise to_transient(exc, "confirm_booking") from exc

    logger.info("Booking #%s confirmed", booking_id)
    warnings = await _notify(
        dispatcher,
        NotificationEvent(
            type=NotificationType.BOOKING_CONFIRMED,
            shop_id=details.shop_id,
            booking_id=booking_id,
            recipient="customer",
            title="Booking confirmed",
            message=f"{details.shop_name} confirmed your booking on {details.selected_date} at {details.selected_time}",
            payload=webhook_payload(details),
        ),
    )
    return LifecycleResult(details, True, warnings)


def _parse_actor(actor: CancelActor | str) -> CancelActor:
    if isinstance(actor, CancelActor):
        return actor
    try:
        return CancelActor(str(actor).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"unknown actor {actor!r}", code="invalid_actor") from exc


async def cancel_booking(
    booking_id: int,
    reason: str,
    actor: CancelActor | str = CancelActor.CUSTOMER,
    *,
    dispatcher: NotificationDispatcher | None = None,
    feed: SlotFeed | None = None,
    now: datetime | None = None,
) -> LifecycleResult:
    """Cancel a pending or confirmed booking and release its slot.

    Cancelling an already cancelled booking returns ``changed=False`` and
    sends nothing. The party that did not cancel is notified.
    """
    who = _parse_actor(actor)
    reason = str(reason or "").strip()
    if not reason:
        raise ValidationError("a cancellation reason is required", code="reason_required")
    now = now or utc_now()
    try:
        async with get_session() as session:
            booking = await _load_booking(session, booking_id)
            shop = await _load_shop(session, booking.shop_id)
            if booking.status == BookingStatus.CANCELLED:
                logger.debug("Booking #%s already cancelled; nothing to do", booking_id)
                return LifecycleResult(await build_booking_details(session, booking, shop=shop, now=now), False)
            if _is_past(booking, get_shop_tz(shop), now):
                raise ValidationError("booking is already completed", code="booking_completed")

            res = await session.execute(
                update(Booking)
                .where(Booking.id == booking_id, Booking.status.in_(tuple(ACTIVE_STATUSES)))
                .values(
                    status=BookingStatus.CANCELLED,
                    cancellation_reason=reason,
                    cancelled_by=who,
                    cancelled_at=now,
                    last_modified=now,
                )
                .execution_options(synchronize_session=False)
            )
            if not res.rowcount:
                await session.rollback()
                await session.refresh(booking)
                if booking.status == BookingStatus.CANCELLED:
                    return LifecycleResult(await build_booking_details(session, booking, shop=shop, now=now), False)
                raise ValidationError(
                    f"booking changed concurrently (now {booking.status.value})", code="invalid_transition"
                )
            diffs = await SlotRepo.retire(session, booking_id)
            await _commit(session, "cancel_booking")
            await session.refresh(booking)
            details = await build_booking_details(session, booking, shop=shop, now=now)
    except SQLAlchemyError as exc:
        raise to_transient(exc, "cancel_booking") from exc

    logger.info("Booking #%s cancelled by %s (reason=%r)", booking_id, who.value, reason)
    publish_diffs(feed, diffs)
    recipient = "shop" if who == CancelActor.CUSTOMER else "customer"
    warnings = await _notify(
        dispatcher,
        NotificationEvent(
            type=NotificationType.BOOKING_CANCELLED,
            shop_id=details.shop_id,
            booking_id=booking_id,
            recipient=recipient,
            title="Booking cancelled",
            message=f"Booking on {details.selected_date} at {details.selected_time} was cancelled by the {who.value}: {reason}",
            payload=webhook_payload(details, reason=reason, cancelledBy=who.value),
            webhook=True,
        ),
    )
    return LifecycleResult(details, True, warnings)


async def reschedule_booking(
    booking_id: int,
    new_date: date | str,
    new_time: dtime | str,
    *,
    dispatcher: NotificationDispatcher | None = None,
    feed: SlotFeed | None = None,
    now: datetime | None = None,
) -> LifecycleResult:
    """Move a confirmed future booking to another free slot.

    The old reservation is released and the new one claimed in the same
    commit, so the booking never holds both slots or neither.
    """
    target_day = parse_date(new_date)
    target_time = parse_time(new_time)
    now = now or utc_now()
    drift: set[int] = set()
    try:
        async with get_session() as session:
            booking = await _load_booking(session, booking_id)
            shop = await _load_shop(session, booking.shop_id)
            tz = get_shop_tz(shop)
            if booking.status == BookingStatus.CANCELLED:
                raise ValidationError("booking is cancelled", code="booking_cancelled")
            if _is_past(booking, tz, now):
                raise ValidationError("booking is already completed", code="booking_completed")
            if booking.status != BookingStatus.CONFIRMED:
                raise ValidationError("only confirmed bookings can be rescheduled", code="booking_not_confirmed")
            old_day, old_time = booking.selected_date, booking.selected_time
            if (old_day, old_time) == (target_day, target_time):
                raise ValidationError("booking already holds this slot", code="same_slot")
            await _ensure_offered(session, shop, target_day, target_time, tz, now)
            check = await inspect_slot(session, booking.shop_id, target_day, target_time, exclude_booking_id=booking_id)
            drift = check.drift
            if not check.available:
                raise ConflictError("slot is already booked", code="slot_unavailable")

            res = await session.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.status == BookingStatus.CONFIRMED,
                    Booking.selected_date == old_day,
                    Booking.selected_time == old_time,
                )
                .values(
                    selected_date=target_day,
                    selected_time=target_time,
                    previous_date=old_day,
                    previous_time=old_time,
                    last_modified=now,
                )
                .execution_options(synchronize_session=False)
            )
            if not res.rowcount:
                await session.rollback()
                raise ValidationError("booking changed concurrently", code="invalid_transition")
            diffs = await SlotRepo.retire(session, booking_id)
            claimed = await _claim_or_conflict(session, booking.shop_id, target_day, target_time, booking_id)
            if claimed is not None:
                diffs.append(claimed)
            await _commit(session, "reschedule_booking")
            await session.refresh(booking)
            details = await build_booking_details(session, booking, shop=shop, now=now)
    except SQLAlchemyError as exc:
        raise to_transient(exc, "reschedule_booking") from exc
    finally:
        await _repair_drift(drift, feed)

    logger.info(
        "Booking #%s rescheduled %s %s -> %s %s",
        booking_id,
        details.previous_date,
        details.previous_time,
        details.selected_date,
        details.selected_time,
    )
    publish_diffs(feed, diffs)
    warnings = await _notify(
        dispatcher,
        NotificationEvent(
            type=NotificationType.BOOKING_MODIFIED,
            shop_id=details.shop_id,
            booking_id=booking_id,
            recipient="customer",
            title="Booking rescheduled",
            message=(
                f"Your booking moved from {details.previous_date} {details.previous_time} "
                f"to {details.selected_date} {details.selected_time}"
            ),
            payload=webhook_payload(
                details,
                newDate=details.selected_date,
                newTime=details.selected_time,
                previousDate=details.previous_date,
                previousTime=details.previous_time,
            ),
            webhook=True,
        ),
    )
    return LifecycleResult(details, True, warnings)


async def update_booking(
    booking_id: int,
    *,
    services: Sequence[Mapping[str, Any] | str] | None = None,
    notes: str | None = None,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> LifecycleResult:
    """Replace the services and/or the notes of a live booking.

    ``None`` leaves a field as it is; an empty ``notes`` string clears the
    notes. The slot is not touched. Both the shop and the customer are told.
    """
    if services is None and notes is None:
        raise ValidationError("nothing to update", code="nothing_to_update")
    items = _normalize_services(services) if services is not None else None
    now = now or utc_now()
    values: dict[str, Any] = {"last_modified": now}
    if notes is not None:
        values["notes"] = _clean_notes(notes)
    try:
        async with get_session() as session:
            booking = await _load_booking(session, booking_id)
            shop = await _load_shop(session, booking.shop_id)
            if booking.status == BookingStatus.CANCELLED:
                raise ValidationError("booking is cancelled", code="booking_cancelled")
            if _is_past(booking, get_shop_tz(shop), now):
                raise ValidationError("booking is already completed", code="booking_completed")

            res = await session.execute(
                update(Booking)
                .where(Booking.id == booking_id, Booking.status.in_(ACTIVE_STATUSES))
                .values(values)
                .execution_options(synchronize_session=False)
            )
            if not res.rowcount:
                await session.rollback()
                raise ValidationError("booking changed concurrently", code="invalid_transition")
            if items is not None:
                await session.execute(delete(BookingItem).where(BookingItem.booking_id == booking_id))
                for position, (name, price_cents) in enumerate(items):
                    session.add(
                        BookingItem(booking_id=booking_id, service_name=name, price_cents=price_cents, position=position)
                    )
            await _commit(session, "update_booking")
            await session.refresh(booking)
            details = await build_booking_details(session, booking, shop=shop, now=now)
    except SQLAlchemyError as exc:
        raise to_transient(exc, "update_booking") from exc

    changed = [name for name, value in (("services", services), ("notes", notes)) if value is not None]
    logger.info("Booking #%s updated: %s", booking_id, ", ".join(changed))
    service_names = ", ".join(s["name"] for s in details.services)
    warnings: list[PartialFailure] = []
    # one webhook call per event; the second record is inbox only
    for recipient, webhook in (("shop", True), ("customer", False)):
        warnings += await _notify(
            dispatcher,
            NotificationEvent(
                type=NotificationType.BOOKING_UPDATED,
                shop_id=details.shop_id,
                booking_id=booking_id,
                recipient=recipient,
                title="Booking updated",
                message=(
                    f"Booking on {details.selected_date} at {details.selected_time}: "
                    f"{service_names} ({details.total_price})"
                ),
                payload=webhook_payload(details, notes=details.notes, updatedFields=changed),
                webhook=webhook,
            ),
        )
    return LifecycleResult(details, True, warnings)


# ---------------- Queries ---------------- #
async def get_booking(booking_id: int, *, now: datetime | None = None) -> BookingDetails:
    try:
        async with get_session() as session:
            booking = await _load_booking(session, booking_id)
            return await build_booking_details(session, booking, now=now)
    except SQLAlchemyError as exc:
        raise to_transient(exc, "get_booking") from exc


async def list_shop_bookings(
    shop_id: int,
    day: date | str | None = None,
    *,
    include_cancelled: bool = True,
    now: datetime | None = None,
) -> list[BookingDetails]:
    """Bookings of a shop ordered by appointment, optionally for one day."""
    stmt = select(Booking).where(Booking.shop_id == shop_id)
    if day is not None:
        stmt = stmt.where(Booking.selected_date == parse_date(day))
    if not include_cancelled:
        stmt = stmt.where(Booking.status != BookingStatus.CANCELLED)
    stmt = stmt.order_by(Booking.selected_date, Booking.selected_time, Booking.id)
    try:
        async with get_session() as session:
            shop = await _load_shop(session, shop_id)
            rows = (await session.execute(stmt)).scalars().all()
            return [await build_booking_details(session, b, shop=shop, now=now) for b in rows]
    except SQLAlchemyError as exc:
        raise to_transient(exc, "list_shop_bookings") from exc


__all__ = [
    "effective_status",
    "BookingDetails",
    "build_booking_details",
    "LifecycleResult",
    "webhook_payload",
    "create_booking",
    "confirm_booking",
    "cancel_booking",
    "reschedule_booking",
    "update_booking",
    "get_booking",
    "list_shop_bookings",
]
