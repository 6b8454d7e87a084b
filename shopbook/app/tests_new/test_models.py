from shopbook.app.domain import models


def test_normalize_booking_status_variants():
    assert models.normalize_booking_status("CONFIRMED") is models.BookingStatus.CONFIRMED
    assert models.normalize_booking_status(" pending ") is models.BookingStatus.PENDING
    assert models.normalize_booking_status(models.BookingStatus.CANCELLED) is models.BookingStatus.CANCELLED
    assert models.normalize_booking_status("unknown") is None
    assert models.normalize_booking_status(None) is None


def test_status_collections():
    assert models.ACTIVE_STATUSES == {models.BookingStatus.PENDING, models.BookingStatus.CONFIRMED}
    assert models.BookingStatus.CANCELLED not in models.ACTIVE_STATUSES
    # completed is derived, never written
    assert models.BookingStatus.COMPLETED not in models.STORED_STATUSES


def test_enum_columns_store_lowercase_values():
    status_type = models.Booking.__table__.c.status.type
    assert status_type.enums == ["pending", "confirmed", "cancelled", "completed"]
    assert models.SlotReservation.__table__.c.status.type.enums == ["booked", "cancelled"]


def test_booked_reservation_index_is_partial_and_unique():
    index = next(i for i in models.SlotReservation.__table__.indexes if i.name == "uq_slot_reservations_booked")
    assert index.unique
    assert [c.name for c in index.columns] == ["shop_id", "slot_date", "slot_time"]
    assert "booked" in str(index.dialect_options["sqlite"]["where"])


def test_rating_distribution_property():
    agg = models.ShopRatingAggregate(shop_id=1, stars_1=0, stars_2=1, stars_3=0, stars_4=2, stars_5=None)
    assert agg.distribution == {1: 0, 2: 1, 3: 0, 4: 2, 5: 0}
