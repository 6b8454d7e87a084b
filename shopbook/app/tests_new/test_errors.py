from sqlalchemy.exc import IntegrityError, OperationalError

from shopbook.app.core.errors import (
    BookingError,
    ConflictError,
    PartialFailure,
    TransientStoreError,
    ValidationError,
    to_transient,
)


def test_unhandled_constraint_violation_becomes_conflict():
    exc = IntegrityError("INSERT INTO shop_rating_aggregates", {}, Exception("UNIQUE constraint failed"))
    mapped = to_transient(exc, "submit_rating")
    assert isinstance(mapped, ConflictError)
    assert isinstance(mapped, BookingError)
    assert mapped.code == "store_conflict"
    assert "submit_rating" in str(mapped)


def test_connectivity_errors_become_transient():
    exc = OperationalError("SELECT 1", {}, Exception("connection refused"))
    mapped = to_transient(exc, "get_booking")
    assert isinstance(mapped, TransientStoreError)
    assert mapped.code == "store_unavailable"


def test_other_errors_pass_through():
    exc = ValueError("boom")
    assert to_transient(exc, "anything") is exc


def test_booking_error_codes_and_details():
    err = ValidationError("bad slot", code="slot_in_past", slot="09:00")
    assert err.code == "slot_in_past"
    assert err.details == {"slot": "09:00"}
    assert str(err) == "bad slot"
    assert ConflictError("taken").code == "slot_unavailable"

    warning = PartialFailure("webhook", "timeout", booking_id=3)
    assert warning.as_dict() == {"step": "webhook", "message": "timeout", "booking_id": 3}
