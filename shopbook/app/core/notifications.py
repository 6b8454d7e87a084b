from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from shopbook.app.core.db import get_session
from shopbook.app.core.errors import NotFoundError, PartialFailure, to_transient
from shopbook.app.domain.models import Notification, NotificationType
from shopbook.config import get_webhook_timeout_seconds, get_webhook_url

logger = logging.getLogger(__name__)

__all__ = [
    "NotificationEvent",
    "NotificationDispatcher",
    "get_dispatcher",
    "list_notifications",
    "mark_notification_read",
]


@dataclass
class NotificationEvent:
    type: NotificationType
    shop_id: int
    booking_id: int | None
    # "shop" (owner inbox) or "customer"
    recipient: str
    title: str
    message: str
    payload: dict[str, Any] = field(default_factory=dict)
    # also deliver to the downstream webhook
    webhook: bool = False

    def webhook_body(self) -> dict[str, Any]:
        return {"event": self.type.value, "bookingId": self.booking_id, **self.payload}


class NotificationDispatcher:
    """Best-effort fan-out of lifecycle events.

    The inbox record and the webhook call are independent: a failing webhook
    does not undo the record and a failing record does not stop the webhook.
    Neither failure is raised; both come back as PartialFailure warnings.
    """

    def __init__(
        self,
        webhook_url: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout
        self._transport = transport

    @property
    def webhook_url(self) -> str | None:
        return self._webhook_url or get_webhook_url()

    async def fire_and_forget(self, event: NotificationEvent) -> list[PartialFailure]:
        warnings: list[PartialFailure] = []
        try:
            await self._record(event)
        except Exception as e:
            logger.exception("Notification record failed for booking #%s (%s): %s", event.booking_id, event.type.value, e)
            warnings.append(PartialFailure("notification_record", str(e) or type(e).__name__, booking_id=event.booking_id))

        url = self.webhook_url
        if event.webhook and url:
            try:
                await self._post(url, event.webhook_body())
            except httpx.HTTPStatusError as e:
                logger.warning(
                    "Webhook for booking #%s (%s) answered %s",
                    event.booking_id,
                    event.type.value,
                    e.response.status_code,
                )
                warnings.append(
                    PartialFailure("webhook", f"webhook answered {e.response.status_code}", booking_id=event.booking_id)
                )
            except httpx.HTTPError as e:
                logger.warning("Webhook for booking #%s (%s) failed: %s", event.booking_id, event.type.value, e)
                warnings.append(PartialFailure("webhook", str(e) or type(e).__name__, booking_id=event.booking_id))
        elif event.webhook:
            logger.debug("No webhook URL configured; skipping delivery for booking #%s", event.booking_id)
        return warnings

    async def _record(self, event: NotificationEvent) -> int:
        async with get_session() as session:
            row = Notification(
                type=event.type.value,
                shop_id=event.shop_id,
                booking_id=event.booking_id,
                recipient=event.recipient,
                title=event.title,
                message=event.message,
                payload=event.payload or None,
            )
            session.add(row)
            await session.commit()
            logger.debug("Notification #%s stored (%s -> %s)", row.id, event.type.value, event.recipient)
            return row.id

    async def _post(self, url: str, body: dict[str, Any]) -> None:
        timeout = self._timeout if self._timeout is not None else get_webhook_timeout_seconds()
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            r = await client.post(url, json=body)
            r.raise_for_status()


_default_dispatcher: NotificationDispatcher | None = None


def get_dispatcher() -> NotificationDispatcher:
    global _default_dispatcher
    if _default_dispatcher is None:
        _default_dispatcher = NotificationDispatcher()
    return _default_dispatcher


async def list_notifications(
    shop_id: int,
    *,
    recipient: str | None = "shop",
    unread_only: bool = False,
    limit: int = 50,
) -> list[Notification]:
    """Inbox listing, newest first."""
    stmt = select(Notification).where(Notification.shop_id == shop_id)
    if recipient:
        stmt = stmt.where(Notification.recipient == recipient)
    if unread_only:
        stmt = stmt.where(Notification.read.is_(False))
    stmt = stmt.order_by(Notification.id.desc()).limit(int(limit))
    try:
        async with get_session() as session:
            return list((await session.execute(stmt)).scalars().all())
    except SQLAlchemyError as exc:
        raise to_transient(exc, "list_notifications") from exc


async def mark_notification_read(notification_id: int) -> None:
    try:
        async with get_session() as session:
            res = await session.execute(
                update(Notification).where(Notification.id == notification_id).values(read=True)
            )
            await session.commit()
    except SQLAlchemyError as exc:
        raise to_transient(exc, "mark_notification_read") from exc
    if not res.rowcount:
        raise NotFoundError(f"notification {notification_id} not found", code="notification_not_found")
