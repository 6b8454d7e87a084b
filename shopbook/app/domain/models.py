from datetime import UTC, date as _date, datetime, time as _time
from enum import Enum as _Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class (explicit for mypy)."""

    pass


class BookingStatus(_Enum):  # Values match DB labels
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    # Never stored: derived at read time once the appointment instant has passed.
    COMPLETED = "completed"


class SlotStatus(_Enum):
    BOOKED = "booked"
    CANCELLED = "cancelled"


class CancelActor(_Enum):
    CUSTOMER = "customer"
    SHOP = "shop"


class NotificationType(_Enum):
    NEW_BOOKING = "new_booking"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_MODIFIED = "booking_modified"
    BOOKING_UPDATED = "booking_updated"
    APPOINTMENT_REMINDER = "appointment_reminder"
    RATING = "rating"
    RATING_RESPONSE = "rating_response"


def normalize_booking_status(value: str | BookingStatus | None) -> BookingStatus | None:
    """Return a BookingStatus enum when possible (accepts strings/enum values)."""
    if isinstance(value, BookingStatus):
        return value
    if isinstance(value, str):
        try:
            return BookingStatus(value.strip().lower())
        except ValueError:
            return None
    return None


# Statuses that hold a slot
ACTIVE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})
STORED_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.CANCELLED})

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def _enum_values(enum_cls: type[_Enum]) -> list[str]:
    return [m.value for m in enum_cls]


class Shop(Base):
    __tablename__ = "shops"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    # External identity of the owner (sign-in lives outside this service)
    owner_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    # IANA timezone name used to interpret selected_date/selected_time
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    slot_granularity_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )


class ShopHours(Base):
    __tablename__ = "shop_hours"
    __table_args__ = (UniqueConstraint("shop_id", "weekday", name="uq_shop_hours_shop_weekday"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id", ondelete="CASCADE"), index=True)
    # Day of week: Monday=0 .. Sunday=6
    weekday: Mapped[int] = mapped_column(Integer, nullable=False)
    open_time: Mapped[_time] = mapped_column(Time, nullable=False)
    close_time: Mapped[_time] = mapped_column(Time, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_shop_date_time", "shop_id", "selected_date", "selected_time"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id", ondelete="CASCADE"))
    customer_id: Mapped[str] = mapped_column(String(128), index=True)
    customer_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(
            BookingStatus,
            name="booking_status",
            values_callable=_enum_values,
            native_enum=True,
        ),
        default=BookingStatus.PENDING,
    )
    selected_date: Mapped[_date] = mapped_column(Date)
    selected_time: Mapped[_time] = mapped_column(Time)
    employee_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    employee_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    last_modified: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    # History of the slot held before the latest reschedule
    previous_date: Mapped[_date | None] = mapped_column(Date, nullable=True)
    previous_time: Mapped[_time | None] = mapped_column(Time, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[CancelActor | None] = mapped_column(
        Enum(CancelActor, name="cancel_actor", values_callable=_enum_values, native_enum=True),
        nullable=True,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_rated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rating_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Set when the slot index could not be repaired automatically
    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Reminder e-mails already handed to the dispatcher, one flag per lead time
    remind_1h_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    remind_24h_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    remind_72h_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    remind_1w_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class BookingItem(Base):
    __tablename__ = "booking_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), index=True)
    service_name: Mapped[str] = mapped_column(String(200))
    # price snapshot at booking time
    price_cents: Mapped[int] = mapped_column(Integer, default=0)
    position: Mapped[int] = mapped_column(Integer, default=0)


class SlotReservation(Base):
    __tablename__ = "slot_reservations"
    __table_args__ = (
        # At most one booked reservation per natural slot key. Claims are plain
        # INSERTs; a violation of this index is a lost race for the slot.
        Index(
            "uq_slot_reservations_booked",
            "shop_id",
            "slot_date",
            "slot_time",
            unique=True,
            postgresql_where=text("status = 'booked'"),
            sqlite_where=text("status = 'booked'"),
        ),
        Index("ix_slot_reservations_booking", "booking_id"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id", ondelete="CASCADE"))
    slot_date: Mapped[_date] = mapped_column(Date)
    slot_time: Mapped[_time] = mapped_column(Time)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"))
    status: Mapped[SlotStatus] = mapped_column(
        Enum(SlotStatus, name="slot_status", values_callable=_enum_values, native_enum=True),
        default=SlotStatus.BOOKED,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )


class Rating(Base):
    __tablename__ = "ratings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), unique=True)
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id", ondelete="CASCADE"), index=True)
    customer_id: Mapped[str] = mapped_column(String(128))
    rating: Mapped[int] = mapped_column(Integer)
    review: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    shop_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    shop_response_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ShopRatingAggregate(Base):
    __tablename__ = "shop_rating_aggregates"
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id", ondelete="CASCADE"), primary_key=True)
    rating_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rating_sum: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_rating: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    stars_1: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stars_2: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stars_3: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stars_4: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stars_5: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_rated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def distribution(self) -> dict[int, int]:
        return {value: int(getattr(self, f"stars_{value}") or 0) for value in range(1, 6)}


class Notification(Base):
    __tablename__ = "notifications"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(40))
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id", ondelete="CASCADE"), index=True)
    booking_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # "shop" for the owner inbox, "customer" for the customer inbox
    recipient: Mapped[str] = mapped_column(String(16), default="shop")
    title: Mapped[str] = mapped_column(String(200))
    message: Mapped[str] = mapped_column(Text)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )


__all__ = [
    "Base",
    "BookingStatus",
    "SlotStatus",
    "CancelActor",
    "NotificationType",
    "Shop",
    "ShopHours",
    "Booking",
    "BookingItem",
    "SlotReservation",
    "Rating",
    "ShopRatingAggregate",
    "Notification",
    "normalize_booking_status",
    "ACTIVE_STATUSES",
    "STORED_STATUSES",
    "WEEKDAY_NAMES",
]
