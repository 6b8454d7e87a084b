from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import Float, cast, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shopbook.app.core.db import get_session
from shopbook.app.core.errors import NotFoundError, PartialFailure, ValidationError, to_transient
from shopbook.app.core.notifications import NotificationDispatcher, NotificationEvent, get_dispatcher
from shopbook.app.domain.models import (
    Booking,
    BookingStatus,
    NotificationType,
    Rating,
    Shop,
    ShopRatingAggregate,
)
from shopbook.app.services.shared_services import appointment_datetime, get_shop_tz, utc_now

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5
# preview length of the shop response in the customer notification
RESPONSE_PREVIEW_CHARS = 100

_INSERT_IGNORING_CONFLICTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


@dataclass
class RatingSummary:
    shop_id: int
    count: int
    average: float
    distribution: dict[int, int]

    def as_dict(self) -> dict[str, Any]:
        return {
            "shop_id": self.shop_id,
            "count": self.count,
            "average": self.average,
            "distribution": {str(k): v for k, v in self.distribution.items()},
        }


def _summary(shop_id: int, agg: ShopRatingAggregate | None) -> RatingSummary:
    if agg is None:
        return RatingSummary(shop_id, 0, 0.0, {value: 0 for value in range(MIN_RATING, MAX_RATING + 1)})
    count = int(agg.rating_count or 0)
    average = round(float(agg.rating_sum or 0) / count, 1) if count else 0.0
    return RatingSummary(shop_id, count, average, agg.distribution)


@dataclass
class RatingResult:
    rating_id: int
    booking_id: int
    shop_id: int
    aggregate: RatingSummary
    warnings: list[PartialFailure] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "rating_id": self.rating_id,
            "booking_id": self.booking_id,
            "shop_id": self.shop_id,
            "aggregate": self.aggregate.as_dict(),
            "warnings": [w.as_dict() for w in self.warnings],
        }


def _validate_rating(rating: Any) -> int:
    # bool is an int subclass; True must not count as one star
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise ValidationError("rating must be an integer between 1 and 5", code="invalid_rating")
    if not (MIN_RATING <= rating <= MAX_RATING):
        raise ValidationError("rating must be an integer between 1 and 5", code="invalid_rating")
    return rating


async def _increment_aggregate(session, shop_id: int, rating: int, now: datetime) -> int:
    """Apply one rating to the shop aggregate inside the caller's transaction.

    The arithmetic runs in the database against the row's current values, so
    concurrent ratings of the same shop never lose an update.
    """
    star_column = f"stars_{rating}"
    stmt = (
        update(ShopRatingAggregate)
        .where(ShopRatingAggregate.shop_id == shop_id)
        .values(
            {
                "rating_count": ShopRatingAggregate.rating_count + 1,
                "rating_sum": ShopRatingAggregate.rating_sum + rating,
                star_column: getattr(ShopRatingAggregate, star_column) + 1,
                "average_rating": cast(ShopRatingAggregate.rating_sum + rating, Float)
                / (ShopRatingAggregate.rating_count + 1),
                "last_rated_at": now,
            }
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount or 0


async def _ensure_aggregate_row(session, shop_id: int) -> None:
    """Insert an empty aggregate row for ``shop_id`` unless one already exists.

    Two first ratings of the same shop may both get here; the loser's insert
    is skipped instead of failing the transaction.
    """
    insert_for = _INSERT_IGNORING_CONFLICTS.get(session.get_bind().dialect.name)
    if insert_for is not None:
        await session.execute(
            insert_for(ShopRatingAggregate)
            .values(shop_id=shop_id)
            .on_conflict_do_nothing(index_elements=["shop_id"])
        )
        return
    try:
        async with session.begin_nested():
            session.add(ShopRatingAggregate(shop_id=shop_id))
    except IntegrityError:
        logger.debug("Aggregate row for shop #%s created concurrently", shop_id)


async def submit_rating(
    booking_id: int,
    rating: int,
    review: str | None,
    customer_id: str,
    *,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> RatingResult:
    """Record the single rating of a completed booking and update the shop aggregate.

    The rating row, the aggregate increment and the booking's ``is_rated`` flag
    commit together. A second rating for the same booking raises
    ValidationError (``already_rated``).
    """
    value = _validate_rating(rating)
    review_text = str(review or "").strip()
    if not review_text:
        raise ValidationError("a review text is required", code="review_required")
    now = now or utc_now()

    try:
        async with get_session() as session:
            booking = await session.get(Booking, booking_id)
            if booking is None:
                raise NotFoundError(f"booking {booking_id} not found", code="booking_not_found")
            if booking.customer_id != str(customer_id):
                raise ValidationError("booking belongs to another customer", code="not_booking_owner")
            if booking.status == BookingStatus.CANCELLED:
                raise ValidationError("cancelled bookings cannot be rated", code="booking_cancelled")
            shop = await session.get(Shop, booking.shop_id)
            if appointment_datetime(booking.selected_date, booking.selected_time, get_shop_tz(shop)) >= now:
                raise ValidationError("booking is not completed yet", code="booking_not_completed")
            if booking.is_rated:
                raise ValidationError("booking was already rated", code="already_rated")
            shop_id = booking.shop_id

            flagged = await session.execute(
                update(Booking)
                .where(Booking.id == booking_id, Booking.is_rated.is_(False))
                .values(is_rated=True)
                .execution_options(synchronize_session=False)
            )
            if not flagged.rowcount:
                await session.rollback()
                raise ValidationError("booking was already rated", code="already_rated")

            row = Rating(
                booking_id=booking_id,
                shop_id=shop_id,
                customer_id=str(customer_id),
                rating=value,
                review=review_text,
                created_at=now,
            )
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise ValidationError("booking was already rated", code="already_rated") from exc

            if not await _increment_aggregate(session, shop_id, value, now):
                # shops created outside ShopRepo have no aggregate row yet
                await _ensure_aggregate_row(session, shop_id)
                await _increment_aggregate(session, shop_id, value, now)

            await session.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .values(rating_id=row.id)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            rating_id = row.id
            agg = await session.get(ShopRatingAggregate, shop_id, populate_existing=True)
            summary = _summary(shop_id, agg)
    except SQLAlchemyError as exc:
        raise to_transient(exc, "submit_rating") from exc

    logger.info(
        "Rating %d stored for booking #%s (shop #%s, now %s over %d)",
        value,
        booking_id,
        shop_id,
        summary.average,
        summary.count,
    )
    warnings = await (dispatcher or get_dispatcher()).fire_and_forget(
        NotificationEvent(
            type=NotificationType.RATING,
            shop_id=shop_id,
            booking_id=booking_id,
            recipient="shop",
            title="New rating",
            message=f"Booking #{booking_id} was rated {value}/5: {review_text}",
            payload={"rating": value, "review": review_text, "customerId": str(customer_id)},
        )
    )
    return RatingResult(rating_id, booking_id, shop_id, summary, warnings)


async def get_shop_rating(shop_id: int) -> RatingSummary:
    try:
        async with get_session() as session:
            if await session.get(Shop, shop_id) is None:
                raise NotFoundError(f"shop {shop_id} not found", code="shop_not_found")
            agg = await session.get(ShopRatingAggregate, shop_id)
    except SQLAlchemyError as exc:
        raise to_transient(exc, "get_shop_rating") from exc
    return _summary(shop_id, agg)


async def list_shop_ratings(shop_id: int, *, limit: int = 20) -> list[Rating]:
    """Most recent ratings of a shop."""
    try:
        async with get_session() as session:
            res = await session.execute(
                select(Rating).where(Rating.shop_id == shop_id).order_by(Rating.id.desc()).limit(int(limit))
            )
            return list(res.scalars().all())
    except SQLAlchemyError as exc:
        raise to_transient(exc, "list_shop_ratings") from exc


def rating_entry(row: Rating) -> dict[str, Any]:
    return {
        "rating_id": row.id,
        "booking_id": row.booking_id,
        "shop_id": row.shop_id,
        "customer_id": row.customer_id,
        "rating": row.rating,
        "review": row.review,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "shop_response": row.shop_response,
        "shop_response_at": row.shop_response_at.isoformat() if row.shop_response_at else None,
    }


@dataclass
class RatingResponseResult:
    rating: Rating
    warnings: list[PartialFailure] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"rating": rating_entry(self.rating), "warnings": [w.as_dict() for w in self.warnings]}


async def respond_to_rating(
    rating_id: int,
    response: str,
    shop_id: int,
    *,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> RatingResponseResult:
    """Attach the shop's public reply to a rating and tell the customer.

    A later reply replaces the earlier one. The aggregate is not touched.
    """
    text = str(response or "").strip()
    if not text:
        raise ValidationError("a response text is required", code="response_required")
    now = now or utc_now()

    try:
        async with get_session() as session:
            row = await session.get(Rating, rating_id)
            if row is None:
                raise NotFoundError(f"rating {rating_id} not found", code="rating_not_found")
            if row.shop_id != shop_id:
                raise ValidationError("rating belongs to another shop", code="not_shop_rating")
            row.shop_response = text
            row.shop_response_at = now
            await session.commit()
    except SQLAlchemyError as exc:
        raise to_transient(exc, "respond_to_rating") from exc

    logger.info("Shop #%s responded to rating #%s", shop_id, rating_id)
    preview = text if len(text) <= RESPONSE_PREVIEW_CHARS else text[:RESPONSE_PREVIEW_CHARS] + "..."
    warnings = await (dispatcher or get_dispatcher()).fire_and_forget(
        NotificationEvent(
            type=NotificationType.RATING_RESPONSE,
            shop_id=shop_id,
            booking_id=row.booking_id,
            recipient="customer",
            title="The shop responded to your review",
            message=preview,
            payload={"ratingId": rating_id, "customerId": row.customer_id, "response": text},
        )
    )
    return RatingResponseResult(row, warnings)


__all__ = [
    "RatingSummary",
    "RatingResult",
    "submit_rating",
    "get_shop_rating",
    "list_shop_ratings",
    "rating_entry",
    "RatingResponseResult",
    "respond_to_rating",
]
