"""FastAPI facade over the booking engine.

Thin HTTP layer: parses requests into service calls and maps engine errors to
status codes. Identity (customer id, cancelling actor) arrives in the request
body; authentication happens upstream.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import wraps
from typing import Any, AsyncIterator, Dict, Literal, Optional

from fastapi import FastAPI, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from shopbook.app.core.db import init_db
from shopbook.app.core.errors import (
    BookingError,
    ConflictError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from shopbook.app.core.logger import setup_logging, shutdown_logging
from shopbook.app.core.notifications import (
    NotificationDispatcher,
    get_dispatcher,
    list_notifications,
    mark_notification_read,
)
from shopbook.app.services import booking_services, rating_services
from shopbook.app.services.availability_services import (
    get_day_slots,
    get_shop_availability,
    set_shop_availability,
)
from shopbook.app.services.slot_services import SlotFeed
from shopbook.app.workers.reconciliation import start_reconciliation_worker, stop_reconciliation_worker
from shopbook.app.workers.reminders import start_reminders_worker, stop_reminders_worker
from shopbook.config import get_setting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class SlotOut(BaseModel):
    time: str
    booked: bool
    past: bool = False
    available: bool = True


class SlotsResponse(BaseModel):
    shop_id: int
    date: str
    slots: list[SlotOut]


class HoursIn(BaseModel):
    open: str
    close: str


class AvailabilityPayload(BaseModel):
    availability: Dict[str, Optional[HoursIn]]


class AvailabilityResponse(BaseModel):
    shop_id: int
    availability: Dict[str, HoursIn]


class ServiceIn(BaseModel):
    name: str = Field(..., min_length=1)
    price_cents: int = Field(0, ge=0)


class BookingCreateRequest(BaseModel):
    shop_id: int
    customer_id: str = Field(..., min_length=1)
    date: str
    time: str
    services: list[ServiceIn] = Field(..., min_length=1)
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    employee_id: Optional[str] = None
    employee_name: Optional[str] = None
    notes: Optional[str] = None

class CancelRequest(BaseModel):
    reason: str = ""
    actor: Literal["customer", "shop"] = "customer"


class RescheduleRequest(BaseModel):
    new_date: str
    new_time: str


class BookingUpdateRequest(BaseModel):
    services: Optional[list[ServiceIn]] = None
    notes: Optional[str] = None


class RateRequest(BaseModel):
    customer_id: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    review: str


class RatingReplyRequest(BaseModel):
    shop_id: int
    response: str = Field(..., min_length=1)

class ServiceOut(BaseModel):
    name: str
    price_cents: int


class BookingOut(BaseModel):
    booking_id: int
    shop_id: int
    shop_name: Optional[str] = None
    status: str
    stored_status: str
    customer_id: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    employee_name: Optional[str] = None
    notes: Optional[str] = None
    selected_date: str
    selected_time: str
    previous_date: Optional[str] = None
    previous_time: Optional[str] = None
    services: list[ServiceOut] = []
    total_price: str
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    is_rated: bool = False
    rating_id: Optional[int] = None
    needs_reconciliation: bool = False


class WarningOut(BaseModel):
    step: str
    message: str
    booking_id: Optional[int] = None


class LifecycleResponse(BaseModel):
    ok: bool = True
    changed: bool
    booking: BookingOut
    warnings: list[WarningOut] = []


class RatingOut(BaseModel):
    shop_id: int
    count: int
    average: float
    distribution: Dict[str, int]


class RatingResponse(BaseModel):
    ok: bool = True
    rating_id: int
    booking_id: int
    shop_id: int
    aggregate: RatingOut
    warnings: list[WarningOut] = []


class RatingEntryOut(BaseModel):
    rating_id: int
    booking_id: int
    shop_id: int
    customer_id: str
    rating: int
    review: Optional[str] = None
    created_at: Optional[str] = None
    shop_response: Optional[str] = None
    shop_response_at: Optional[str] = None


class RatingReplyResponse(BaseModel):
    ok: bool = True
    rating: RatingEntryOut
    warnings: list[WarningOut] = []


class NotificationOut(BaseModel):
    id: int
    type: str
    booking_id: Optional[int] = None
    recipient: str
    title: str
    message: str
    payload: Optional[Dict[str, Any]] = None
    read: bool
    created_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Error handling helpers
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: list[tuple[type[BookingError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (TransientStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def _status_for(exc: BookingError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return status.HTTP_400_BAD_REQUEST


def booking_error_handler(default_error: str):
    """Decorator to de-duplicate try/except in endpoints.

    - Passes through FastAPI `HTTPException` untouched.
    - Converts engine errors to an HTTPException carrying their code.
    - Logs unexpected exceptions and answers 500 with a unified error code.
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except HTTPException:
                raise
            except BookingError as exc:
                http_status = _status_for(exc)
                log = logger.warning if http_status >= 500 else logger.info
                log("%s rejected (%s): %s", func.__name__, exc.code, exc.message)
                raise HTTPException(
                    status_code=http_status, detail={"code": exc.code, "message": exc.message}
                ) from exc
            except Exception as exc:  # noqa: BLE001 - API boundary
                logger.exception("%s failed: %s", func.__name__, exc)
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail={"code": default_error}
                ) from exc

        return wrapper

    return decorator


def _lifecycle_response(result: booking_services.LifecycleResult) -> LifecycleResponse:
    return LifecycleResponse(**result.as_dict())


def _dispatcher(request: Request) -> NotificationDispatcher:
    return getattr(request.app.state, "dispatcher", None) or get_dispatcher()


def _feed(request: Request) -> SlotFeed | None:
    return getattr(request.app.state, "feed", None)


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    setup_logging()
    if get_setting("db_auto_create", False):
        await init_db()
    stop = None
    if get_setting("run_reconciler", False):
        stop = await start_reconciliation_worker(app.state.feed)
    stop_reminders = None
    if get_setting("run_reminders", False):
        stop_reminders = await start_reminders_worker(app.state.dispatcher)
    try:
        yield
    finally:
        await stop_reminders_worker(stop_reminders)
        await stop_reconciliation_worker(stop)
        shutdown_logging()


app = FastAPI(title="Shopbook API", version="0.1.0", lifespan=lifespan)
app.state.feed = SlotFeed()
app.state.dispatcher = None


@app.get("/api/shops/{shop_id}/slots", response_model=SlotsResponse)
@booking_error_handler("slots_failed")
async def shop_slots(shop_id: int, date: str = Query(...)) -> SlotsResponse:
    slots = await get_day_slots(shop_id, date)
    return SlotsResponse(shop_id=shop_id, date=date, slots=[SlotOut(**s.as_dict()) for s in slots])


@app.get("/api/shops/{shop_id}/availability", response_model=AvailabilityResponse)
@booking_error_handler("availability_failed")
async def read_availability(shop_id: int) -> AvailabilityResponse:
    return AvailabilityResponse(shop_id=shop_id, availability=await get_shop_availability(shop_id))


@app.put("/api/shops/{shop_id}/availability", response_model=AvailabilityResponse)
@booking_error_handler("availability_failed")
async def update_availability(shop_id: int, payload: AvailabilityPayload) -> AvailabilityResponse:
    raw = {day: (hours.model_dump() if hours else None) for day, hours in payload.availability.items()}
    return AvailabilityResponse(shop_id=shop_id, availability=await set_shop_availability(shop_id, raw))


@app.get("/api/shops/{shop_id}/rating", response_model=RatingOut)
@booking_error_handler("rating_failed")
async def shop_rating(shop_id: int) -> RatingOut:
    summary = await rating_services.get_shop_rating(shop_id)
    return RatingOut(**summary.as_dict())


@app.get("/api/shops/{shop_id}/ratings", response_model=list[RatingEntryOut])
@booking_error_handler("ratings_failed")
async def shop_ratings(shop_id: int, limit: int = Query(20, ge=1, le=100)) -> list[RatingEntryOut]:
    rows = await rating_services.list_shop_ratings(shop_id, limit=limit)
    return [RatingEntryOut(**rating_services.rating_entry(r)) for r in rows]


@app.get("/api/shops/{shop_id}/notifications", response_model=list[NotificationOut])
@booking_error_handler("notifications_failed")
async def shop_notifications(
    shop_id: int, unread_only: bool = False, recipient: Literal["shop", "customer"] = "shop"
) -> list[NotificationOut]:
    rows = await list_notifications(shop_id, recipient=recipient, unread_only=unread_only)
    return [
        NotificationOut(
            id=n.id,
            type=n.type,
            booking_id=n.booking_id,
            recipient=n.recipient,
            title=n.title,
            message=n.message,
            payload=n.payload,
            read=bool(n.read),
            created_at=n.created_at.isoformat() if n.created_at else None,
        )
        for n in rows
    ]


@app.post("/api/notifications/{notification_id}/read")
@booking_error_handler("notification_failed")
async def read_notification(notification_id: int) -> dict[str, bool]:
    await mark_notification_read(notification_id)
    return {"ok": True}


@app.post("/api/bookings", response_model=LifecycleResponse, status_code=status.HTTP_201_CREATED)
@booking_error_handler("booking_failed")
async def create_booking(payload: BookingCreateRequest, request: Request) -> LifecycleResponse:
    result = await booking_services.create_booking(
        payload.shop_id,
        payload.customer_id,
        payload.date,
        payload.time,
        [s.model_dump() for s in payload.services],
        customer_name=payload.customer_name,
        customer_email=payload.customer_email,
        employee_id=payload.employee_id,
        employee_name=payload.employee_name,
        notes=payload.notes,
        dispatcher=_dispatcher(request),
        feed=_feed(request),
    )
    return _lifecycle_response(result)


@app.get("/api/bookings/{booking_id}", response_model=BookingOut)
@booking_error_handler("details_failed")
async def booking_details(booking_id: int) -> BookingOut:
    details = await booking_services.get_booking(booking_id)
    return BookingOut(**details.as_dict())


@app.post("/api/bookings/{booking_id}/confirm", response_model=LifecycleResponse)
@booking_error_handler("confirm_failed")
async def confirm_booking(booking_id: int, request: Request) -> LifecycleResponse:
    result = await booking_services.confirm_booking(booking_id, dispatcher=_dispatcher(request))
    return _lifecycle_response(result)


@app.post("/api/bookings/{booking_id}/cancel", response_model=LifecycleResponse)
@booking_error_handler("cancel_failed")
async def cancel_booking(booking_id: int, payload: CancelRequest, request: Request) -> LifecycleResponse:
    result = await booking_services.cancel_booking(
        booking_id,
        payload.reason,
        payload.actor,
        dispatcher=_dispatcher(request),
        feed=_feed(request),
    )
    return _lifecycle_response(result)


@app.post("/api/bookings/{booking_id}/reschedule", response_model=LifecycleResponse)
@booking_error_handler("reschedule_failed")
async def reschedule_booking(booking_id: int, payload: RescheduleRequest, request: Request) -> LifecycleResponse:
    result = await booking_services.reschedule_booking(
        booking_id,
        payload.new_date,
        payload.new_time,
        dispatcher=_dispatcher(request),
        feed=_feed(request),
    )
    return _lifecycle_response(result)


@app.patch("/api/bookings/{booking_id}", response_model=LifecycleResponse)
@booking_error_handler("update_failed")
async def update_booking(booking_id: int, payload: BookingUpdateRequest, request: Request) -> LifecycleResponse:
    result = await booking_services.update_booking(
        booking_id,
        services=[s.model_dump() for s in payload.services] if payload.services is not None else None,
        notes=payload.notes,
        dispatcher=_dispatcher(request),
    )
    return _lifecycle_response(result)


@app.post("/api/bookings/{booking_id}/rate", response_model=RatingResponse)
@booking_error_handler("rating_failed")
async def rate_booking(booking_id: int, payload: RateRequest, request: Request) -> RatingResponse:
    result = await rating_services.submit_rating(
        booking_id,
        payload.rating,
        payload.review,
        payload.customer_id,
        dispatcher=_dispatcher(request),
    )
    return RatingResponse(**result.as_dict())


@app.post("/api/ratings/{rating_id}/response", response_model=RatingReplyResponse)
@booking_error_handler("rating_response_failed")
async def respond_to_rating(rating_id: int, payload: RatingReplyRequest, request: Request) -> RatingReplyResponse:
    result = await rating_services.respond_to_rating(
        rating_id,
        payload.response,
        payload.shop_id,
        dispatcher=_dispatcher(request),
    )
    return RatingReplyResponse(**result.as_dict())


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


def get_app() -> FastAPI:
    """Exported factory for uvicorn or tests."""
    return app


__all__ = ["app", "get_app", "booking_error_handler"]
