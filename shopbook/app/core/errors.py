"""Booking engine error taxonomy.

ValidationError, NotFoundError and ConflictError abort an operation before
anything is committed. TransientStoreError means the store could not be
reached and the caller may retry. PartialFailure is never raised by the
lifecycle: it is returned as a warning after the state change took effect.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

logger = logging.getLogger(__name__)

__all__ = [
    "BookingError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "TransientStoreError",
    "PartialFailure",
    "to_transient",
]


class BookingError(Exception):
    """Base class for errors surfaced to callers of the booking engine."""

    default_code = "booking_error"

    def __init__(self, message: str, *, code: str | None = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def __str__(self) -> str:
        return self.message


class ValidationError(BookingError):
    default_code = "invalid_request"


class NotFoundError(BookingError):
    default_code = "not_found"


class ConflictError(BookingError):
    default_code = "slot_unavailable"


class TransientStoreError(BookingError):
    default_code = "store_unavailable"


class PartialFailure:
    """Side effect that failed after the primary state was committed."""

    def __init__(self, step: str, message: str, *, booking_id: int | None = None) -> None:
        self.step = step
        self.message = message
        self.booking_id = booking_id

    def as_dict(self) -> dict[str, Any]:
        return {"step": self.step, "message": self.message, "booking_id": self.booking_id}

    def __repr__(self) -> str:
        return f"PartialFailure(step={self.step!r}, booking_id={self.booking_id!r}, message={self.message!r})"


def to_transient(exc: Exception, context: str) -> Exception:
    """Translate a store error into the booking error taxonomy.

    Constraint violations nobody handled closer to the write become
    ConflictError (``store_conflict``). Operational and DBAPI errors become
    TransientStoreError. Anything else is returned unchanged so the caller can
    re-raise it as is.
    """
    if isinstance(exc, IntegrityError):
        logger.warning("Constraint violation during %s: %s", context, exc.orig)
        return ConflictError(f"conflicting write during {context}", code="store_conflict")
    if isinstance(exc, (OperationalError, DBAPIError)):
        logger.error("Store unavailable during %s: %s", context, exc)
        return TransientStoreError(f"store unavailable during {context}", code="store_unavailable")
    return exc
