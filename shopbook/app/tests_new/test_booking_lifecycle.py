import asyncio
from datetime import UTC, datetime, time, timedelta

import pytest
from sqlalchemy import func, select

from shopbook.app.core.db import get_session
from shopbook.app.core.errors import ConflictError, NotFoundError, ValidationError
from shopbook.app.domain.models import Booking, BookingStatus, Notification, SlotReservation, SlotStatus
from shopbook.app.services import booking_services as bs
from shopbook.app.services.slot_services import check_availability


async def _notification_count(booking_id: int, type_: str) -> int:
    async with get_session() as session:
        return await session.scalar(
            select(func.count(Notification.id)).where(
                Notification.booking_id == booking_id, Notification.type == type_
            )
        )


async def _booked_rows(booking_id: int) -> list[SlotReservation]:
    async with get_session() as session:
        res = await session.execute(
            select(SlotReservation).where(
                SlotReservation.booking_id == booking_id, SlotReservation.status == SlotStatus.BOOKED
            )
        )
        return list(res.scalars().all())


# ---------------- create ---------------- #
def test_create_booking_holds_slot_and_notifies_shop(shop, future_day, check_invariants):
    result = asyncio.run(
        bs.create_booking(
            shop.id,
            "cust-1",
            future_day,
            "10:00",
            [{"name": "Haircut", "price_cents": 2500}, {"name": "Wash", "price_cents": 800}],
            customer_name="Ann",
            customer_email="ann@example.test",
        )
    )
    details = result.booking
    assert result.changed is True
    assert result.warnings == []
    assert details.status == "pending"
    assert details.total_price == "33.00"
    assert [s["name"] for s in details.services] == ["Haircut", "Wash"]
    assert details.selected_time == "10:00"

    rows = asyncio.run(_booked_rows(details.booking_id))
    assert [(r.slot_date, r.slot_time) for r in rows] == [(future_day, time(10, 0))]
    assert asyncio.run(_notification_count(details.booking_id, "new_booking")) == 1
    asyncio.run(check_invariants())


def test_create_booking_rejects_taken_slot(shop, book, future_day, check_invariants):
    asyncio.run(book("10:00"))
    with pytest.raises(ConflictError) as exc:
        asyncio.run(book("10:00", customer_id="cust-2"))
    assert exc.value.code == "slot_unavailable"
    asyncio.run(check_invariants())


@pytest.mark.parametrize(
    "at, code",
    [("10:15", "slot_not_offered"), ("08:30", "slot_not_offered"), ("25:00", "invalid_time")],
)
def test_create_booking_validates_slot(shop, book, at, code):
    with pytest.raises(ValidationError) as exc:
        asyncio.run(book(at))
    assert exc.value.code == code


def test_create_booking_rejects_past_slot(shop, book, past_day):
    with pytest.raises(ValidationError) as exc:
        asyncio.run(book("10:00", day=past_day))
    assert exc.value.code == "slot_in_past"


def test_create_booking_requires_services_and_customer(shop, future_day):
    with pytest.raises(ValidationError):
        asyncio.run(bs.create_booking(shop.id, "cust-1", future_day, "10:00", []))
    with pytest.raises(ValidationError):
        asyncio.run(bs.create_booking(shop.id, " ", future_day, "10:00", ["Cut"]))
    with pytest.raises(NotFoundError):
        asyncio.run(bs.create_booking(shop.id + 100, "cust-1", future_day, "10:00", ["Cut"]))


def test_concurrent_creates_for_one_slot(shop, book, check_invariants):
    async def _race():
        return await asyncio.gather(
            book("16:30", customer_id="a"), book("16:30", customer_id="b"), return_exceptions=True
        )

    results = asyncio.run(_race())
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1 and isinstance(errors[0], ConflictError)
    asyncio.run(check_invariants())


# ---------------- confirm ---------------- #
def test_confirm_booking_and_repeat_is_noop(shop, book):
    booking = asyncio.run(book("11:00"))
    first = asyncio.run(bs.confirm_booking(booking.booking_id))
    assert first.changed is True
    assert first.booking.status == "confirmed"
    second = asyncio.run(bs.confirm_booking(booking.booking_id))
    assert second.changed is False
    assert asyncio.run(_notification_count(booking.booking_id, "booking_confirmed")) == 1


def test_confirm_rejects_cancelled_and_completed(shop, book, past_day, before):
    cancelled = asyncio.run(book("11:00"))
    asyncio.run(bs.cancel_booking(cancelled.booking_id, "double booked"))
    with pytest.raises(ValidationError) as exc:
        asyncio.run(bs.confirm_booking(cancelled.booking_id))
    assert exc.value.code == "booking_cancelled"

    old = asyncio.run(book("11:00", day=past_day, now=before))
    with pytest.raises(ValidationError) as exc:
        asyncio.run(bs.confirm_booking(old.booking_id))
    assert exc.value.code == "booking_completed"

    with pytest.raises(NotFoundError):
        asyncio.run(bs.confirm_booking(4040))


# ---------------- cancel ---------------- #
def test_cancel_releases_slot(shop, book, future_day, check_invariants):
    booking = asyncio.run(book("10:00", confirm=True))
    result = asyncio.run(bs.cancel_booking(booking.booking_id, "no longer needed", "customer"))

    assert result.booking.status == "cancelled"
    assert result.booking.cancellation_reason == "no longer needed"
    assert result.booking.cancelled_by == "customer"

    async def _rows():
        async with get_session() as session:
            res = await session.execute(
                select(SlotReservation.status).where(SlotReservation.booking_id == booking.booking_id)
            )
            return list(res.scalars().all())

    assert asyncio.run(_rows()) == [SlotStatus.CANCELLED]
    assert asyncio.run(check_availability(shop.id, future_day, "10:00")) is True
    asyncio.run(check_invariants())


def test_cancel_twice_notifies_once(shop, book):
    booking = asyncio.run(book("12:00"))
    first = asyncio.run(bs.cancel_booking(booking.booking_id, "ill", "shop"))
    second = asyncio.run(bs.cancel_booking(booking.booking_id, "ill again", "shop"))

    assert first.changed is True
    assert second.changed is False
    assert second.booking.status == "cancelled"
    assert second.booking.cancellation_reason == "ill"
    assert asyncio.run(_notification_count(booking.booking_id, "booking_cancelled")) == 1


def test_cancel_notifies_the_other_party(shop, book):
    by_customer = asyncio.run(book("09:00"))
    by_shop = asyncio.run(book("09:30"))
    asyncio.run(bs.cancel_booking(by_customer.booking_id, "busy", "customer"))
    asyncio.run(bs.cancel_booking(by_shop.booking_id, "staff sick", "shop"))

    async def _recipients():
        async with get_session() as session:
            res = await session.execute(
                select(Notification.booking_id, Notification.recipient).where(Notification.type == "booking_cancelled")
            )
            return dict(res.all())

    assert asyncio.run(_recipients()) == {by_customer.booking_id: "shop", by_shop.booking_id: "customer"}


def test_cancel_validation(shop, book, past_day, before):
    booking = asyncio.run(book("12:00"))
    with pytest.raises(ValidationError) as exc:
        asyncio.run(bs.cancel_booking(booking.booking_id, "   "))
    assert exc.value.code == "reason_required"
    with pytest.raises(ValidationError) as exc:
        asyncio.run(bs.cancel_booking(booking.booking_id, "why", "robot"))
    assert exc.value.code == "invalid_actor"

    old = asyncio.run(book("12:00", day=past_day, now=before))
    with pytest.raises(ValidationError) as exc:
        asyncio.run(bs.cancel_booking(old.booking_id, "too late"))
    assert exc.value.code == "booking_completed"


# ---------------- reschedule ---------------- #
def test_reschedule_moves_reservation(shop, book, future_day, check_invariants):
    booking = asyncio.run(book("10:00", confirm=True))
    new_day = future_day + timedelta(days=1)
    result = asyncio.run(bs.reschedule_booking(booking.booking_id, new_day, "14:30"))

    details = result.booking
    assert details.selected_date == new_day.isoformat()
    assert details.selected_time == "14:30"
    assert details.previous_date == future_day.isoformat()
    assert details.previous_time == "10:00"
    assert details.status == "confirmed"
    assert asyncio.run(check_availability(shop.id, future_day, "10:00")) is True
    assert asyncio.run(check_availability(shop.id, new_day, "14:30")) is False
    assert asyncio.run(_notification_count(booking.booking_id, "booking_modified")) == 1
    asyncio.run(check_invariants())


def test_reschedule_round_trip(shop, book, future_day, check_invariants):
    booking = asyncio.run(book("10:00", confirm=True))
    asyncio.run(bs.reschedule_booking(booking.booking_id, future_day, "15:00"))
    asyncio.run(bs.reschedule_booking(booking.booking_id, future_day, "10:00"))

    rows = asyncio.run(_booked_rows(booking.booking_id))
    assert [(r.slot_date, r.slot_time) for r in rows] == [(future_day, time(10, 0))]
    asyncio.run(check_invariants())


def test_reschedule_rules(shop, book, future_day, past_day, before):
    pending = asyncio.run(book("10:00"))
    with pytest.raises(ValidationError) as exc:
        asyncio.run(bs.reschedule_booking(pending.booking_id, future_day, "11:00"))
    assert exc.value.code == "booking_not_confirmed"

    confirmed = asyncio.run(book("12:00", confirm=True))
    with pytest.raises(ValidationError) as exc:
        asyncio.run(bs.reschedule_booking(confirmed.booking_id, future_day, "12:00"))
    assert exc.value.code == "same_slot"
    with pytest.raises(ValidationError) as exc:
        asyncio.run(bs.reschedule_booking(confirmed.booking_id, past_day, "12:00"))
    assert exc.value.code == "slot_in_past"
    with pytest.raises(ConflictError):
        asyncio.run(bs.reschedule_booking(confirmed.booking_id, future_day, "10:00"))

    old = asyncio.run(book("12:00", day=past_day, confirm=True, now=before))
    with pytest.raises(ValidationError) as exc:
        asyncio.run(bs.reschedule_booking(old.booking_id, future_day, "13:00"))
    assert exc.value.code == "booking_completed"


def test_concurrent_reschedules_to_same_free_slot(shop, book, future_day, check_invariants):
    first = asyncio.run(book("10:00", confirm=True, customer_id="a"))
    second = asyncio.run(book("11:00", confirm=True, customer_id="b"))

    async def _race():
        return await asyncio.gather(
            bs.reschedule_booking(first.booking_id, future_day, "15:00"),
            bs.reschedule_booking(second.booking_id, future_day, "15:00"),
            return_exceptions=True,
        )

    results = asyncio.run(_race())
    winners = [r for r in results if isinstance(r, bs.LifecycleResult)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1 and isinstance(losers[0], ConflictError)

    # the loser keeps its original slot
    loser_id = second.booking_id if winners[0].booking.booking_id == first.booking_id else first.booking_id
    loser = asyncio.run(bs.get_booking(loser_id))
    assert loser.selected_time in {"10:00", "11:00"}
    assert loser.previous_time is None
    asyncio.run(check_invariants())


# ---------------- update ---------------- #
def test_update_booking_replaces_services_and_notes(shop, book, future_day, check_invariants):
    booking = asyncio.run(book("10:00", notes="first visit"))
    assert booking.notes == "first visit"

    result = asyncio.run(
        bs.update_booking(
            booking.booking_id,
            services=[{"name": "Haircut", "price_cents": 2500}, {"name": "Beard trim", "price_cents": 1200}],
            notes="  bring photo  ",
        )
    )
    details = result.booking
    assert result.changed is True
    assert [s["name"] for s in details.services] == ["Haircut", "Beard trim"]
    assert details.total_price == "37.00"
    assert details.notes == "bring photo"
    # the slot stays where it was
    assert (details.selected_date, details.selected_time) == (future_day.isoformat(), "10:00")
    assert [r.slot_time for r in asyncio.run(_booked_rows(booking.booking_id))] == [time(10, 0)]
    asyncio.run(check_invariants())

    assert asyncio.run(_notification_count(booking.booking_id, "booking_updated")) == 2


def test_update_booking_notes_only_keeps_services(shop, book):
    booking = asyncio.run(book("11:00", confirm=True, notes="window seat"))
    details = asyncio.run(bs.update_booking(booking.booking_id, notes="")).booking
    assert details.notes is None
    assert [s["name"] for s in details.services] == ["Haircut"]
    assert details.stored_status == "confirmed"


def test_update_booking_rules(shop, book, past_day, before):
    booking = asyncio.run(book("12:00"))
    with pytest.raises(ValidationError) as exc:
        asyncio.run(bs.update_booking(booking.booking_id))
    assert exc.value.code == "nothing_to_update"
    with pytest.raises(ValidationError) as exc:
        asyncio.run(bs.update_booking(booking.booking_id, services=[]))
    assert exc.value.code == "invalid_services"
    with pytest.raises(NotFoundError):
        asyncio.run(bs.update_booking(9999, notes="x"))

    asyncio.run(bs.cancel_booking(booking.booking_id, "no time"))
    with pytest.raises(ValidationError) as exc:
        asyncio.run(bs.update_booking(booking.booking_id, notes="x"))
    assert exc.value.code == "booking_cancelled"

    old = asyncio.run(book("12:00", day=past_day, confirm=True, now=before))
    with pytest.raises(ValidationError) as exc:
        asyncio.run(bs.update_booking(old.booking_id, notes="x"))
    assert exc.value.code == "booking_completed"


# ---------------- derived status and queries ---------------- #
def test_effective_status_derives_completed():
    booking = Booking(
        status=BookingStatus.CONFIRMED,
        selected_date=datetime(2030, 5, 1).date(),
        selected_time=time(10, 0),
    )
    before = datetime(2030, 5, 1, 9, 59, tzinfo=UTC)
    after = datetime(2030, 5, 1, 10, 1, tzinfo=UTC)
    assert bs.effective_status(booking, before) == BookingStatus.CONFIRMED
    assert bs.effective_status(booking, after) == BookingStatus.COMPLETED

    booking.status = BookingStatus.CANCELLED
    assert bs.effective_status(booking, after) == BookingStatus.CANCELLED


def test_get_and_list_bookings(shop, book, future_day):
    a = asyncio.run(book("13:00"))
    b = asyncio.run(book("09:00"))
    asyncio.run(bs.cancel_booking(a.booking_id, "moved away"))

    assert asyncio.run(bs.get_booking(b.booking_id)).selected_time == "09:00"
    listed = asyncio.run(bs.list_shop_bookings(shop.id, future_day))
    assert [d.booking_id for d in listed] == [b.booking_id, a.booking_id]
    active = asyncio.run(bs.list_shop_bookings(shop.id, include_cancelled=False))
    assert [d.booking_id for d in active] == [b.booking_id]

    stored = asyncio.run(bs.get_booking(b.booking_id, now=datetime.now(UTC) + timedelta(days=30)))
    assert stored.status == "completed"
    assert stored.stored_status == "pending"
