import asyncio
import json

import httpx
import pytest

from shopbook.app.core import notifications as nt
from shopbook.app.core.errors import NotFoundError
from shopbook.app.domain.models import NotificationType
from shopbook.app.services import booking_services as bs

HOOK_URL = "https://hooks.test/bookings"


def _event(shop_id: int, **overrides) -> nt.NotificationEvent:
    data = dict(
        type=NotificationType.BOOKING_CANCELLED,
        shop_id=shop_id,
        booking_id=11,
        recipient="shop",
        title="Booking cancelled",
        message="Booking 11 was cancelled",
        payload={"reason": "sick", "totalPrice": "25.00"},
        webhook=True,
    )
    data.update(overrides)
    return nt.NotificationEvent(**data)


def test_fire_and_forget_records_and_posts(shop):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((str(request.url), json.loads(request.content)))
        return httpx.Response(200, json={"ok": True})

    dispatcher = nt.NotificationDispatcher(HOOK_URL, transport=httpx.MockTransport(handler))
    warnings = asyncio.run(dispatcher.fire_and_forget(_event(shop.id)))

    assert warnings == []
    assert seen == [
        (HOOK_URL, {"event": "booking_cancelled", "bookingId": 11, "reason": "sick", "totalPrice": "25.00"})
    ]
    inbox = asyncio.run(nt.list_notifications(shop.id))
    assert [(n.type, n.title, n.read) for n in inbox] == [("booking_cancelled", "Booking cancelled", False)]


def test_webhook_error_status_is_a_warning(shop):
    dispatcher = nt.NotificationDispatcher(
        HOOK_URL, transport=httpx.MockTransport(lambda request: httpx.Response(502))
    )
    warnings = asyncio.run(dispatcher.fire_and_forget(_event(shop.id)))

    assert len(warnings) == 1
    assert warnings[0].step == "webhook"
    assert "502" in warnings[0].message
    assert warnings[0].as_dict()["booking_id"] == 11
    # the inbox record is independent of the webhook
    assert len(asyncio.run(nt.list_notifications(shop.id))) == 1


def test_webhook_network_error_is_a_warning(shop):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    dispatcher = nt.NotificationDispatcher(HOOK_URL, transport=httpx.MockTransport(handler))
    warnings = asyncio.run(dispatcher.fire_and_forget(_event(shop.id)))
    assert [w.step for w in warnings] == ["webhook"]


def test_webhook_skipped_without_url_or_flag(shop):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    transport = httpx.MockTransport(handler)
    assert asyncio.run(nt.NotificationDispatcher(None, transport=transport).fire_and_forget(_event(shop.id))) == []
    assert asyncio.run(
        nt.NotificationDispatcher(HOOK_URL, transport=transport).fire_and_forget(_event(shop.id, webhook=False))
    ) == []
    assert calls == []


def test_webhook_url_falls_back_to_settings(monkeypatch):
    from shopbook.config import SETTINGS

    monkeypatch.setitem(SETTINGS, "notification_webhook_url", "https://hooks.test/from-settings")
    assert nt.NotificationDispatcher().webhook_url == "https://hooks.test/from-settings"
    assert nt.NotificationDispatcher(HOOK_URL).webhook_url == HOOK_URL


def test_record_failure_does_not_block_webhook(shop, monkeypatch):
    posted = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(request)
        return httpx.Response(204)

    dispatcher = nt.NotificationDispatcher(HOOK_URL, transport=httpx.MockTransport(handler))

    async def _broken_record(event):
        raise RuntimeError("inbox unavailable")

    monkeypatch.setattr(dispatcher, "_record", _broken_record)
    warnings = asyncio.run(dispatcher.fire_and_forget(_event(shop.id)))
    assert [w.step for w in warnings] == ["notification_record"]
    assert len(posted) == 1


def test_lifecycle_commits_despite_failing_webhook(shop, future_day):
    dispatcher = nt.NotificationDispatcher(
        HOOK_URL, transport=httpx.MockTransport(lambda request: httpx.Response(500))
    )
    created = asyncio.run(
        bs.create_booking(shop.id, "cust-1", future_day, "10:00", ["Cut"], dispatcher=dispatcher)
    )
    assert [w.step for w in created.warnings] == ["webhook"]

    cancelled = asyncio.run(bs.cancel_booking(created.booking.booking_id, "late", "customer", dispatcher=dispatcher))
    assert cancelled.booking.status == "cancelled"
    assert [w.step for w in cancelled.warnings] == ["webhook"]
    assert asyncio.run(bs.get_booking(created.booking.booking_id)).status == "cancelled"


def test_reschedule_webhook_payload(shop, future_day):
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200)

    dispatcher = nt.NotificationDispatcher(HOOK_URL, transport=httpx.MockTransport(handler))
    created = asyncio.run(
        bs.create_booking(
            shop.id,
            "cust-1",
            future_day,
            "10:00",
            [{"name": "Cut", "price_cents": 2000}, {"name": "Colour", "price_cents": 4550}],
            customer_name="Ann",
            dispatcher=dispatcher,
        )
    )
    booking_id = created.booking.booking_id
    asyncio.run(bs.confirm_booking(booking_id, dispatcher=dispatcher))
    asyncio.run(bs.reschedule_booking(booking_id, future_day, "16:00", dispatcher=dispatcher))

    # confirm only writes the inbox
    assert [b["event"] for b in bodies] == ["new_booking", "booking_modified"]
    moved = bodies[-1]
    assert moved["bookingId"] == booking_id
    assert moved["newDate"] == future_day.isoformat()
    assert moved["newTime"] == "16:00"
    assert moved["previousTime"] == "10:00"
    assert moved["totalPrice"] == "65.50"
    assert moved["currency"] == "EUR"
    assert moved["customerName"] == "Ann"
    assert moved["shopName"] == "Cut & Go"
    assert moved["shopEmail"] == "owner@cutgo.test"


def test_inbox_listing_and_mark_read(shop):
    dispatcher = nt.NotificationDispatcher()
    for booking_id in (1, 2, 3):
        asyncio.run(dispatcher.fire_and_forget(_event(shop.id, booking_id=booking_id, webhook=False)))
    asyncio.run(dispatcher.fire_and_forget(_event(shop.id, booking_id=4, recipient="customer", webhook=False)))

    inbox = asyncio.run(nt.list_notifications(shop.id))
    assert [n.booking_id for n in inbox] == [3, 2, 1]

    asyncio.run(nt.mark_notification_read(inbox[0].id))
    unread = asyncio.run(nt.list_notifications(shop.id, unread_only=True))
    assert [n.booking_id for n in unread] == [2, 1]
    assert len(asyncio.run(nt.list_notifications(shop.id, recipient=None))) == 4

    with pytest.raises(NotFoundError):
        asyncio.run(nt.mark_notification_read(999))
