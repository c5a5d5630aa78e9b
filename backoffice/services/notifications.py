# backoffice/services/notifications.py
"""
Notification dispatch.

Services never call a dispatcher inside their transaction: they write a
``notification`` outbox event, and after commit the relay hands it to a dispatcher.
The optional eager relay (EAGER_NOTIFICATIONS) only covers the events of the operation
that just committed; the backlog belongs to the scheduler job. A failed delivery stays in the outbox
(attempts / last_error / next_attempt_at) and is retried by the scheduler; it never affects
the operation that produced it.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

import httpx
from sqlalchemy import inspect
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.logging import get_logger
from backoffice.models.outbox import CHANNEL_NOTIFICATION, SESSION_NOTIFICATIONS_KEY, OutboxEvent

logger = get_logger(__name__)


class NotificationDeliveryError(RuntimeError):
    """Dispatcher could not hand the notification over."""


class NotificationDispatcher(Protocol):
    def notify(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        action_link: Optional[str] = None,
    ) -> None: ...


class LoggingNotificationDispatcher:
    """Log-only dispatcher (development / tests)."""

    def __init__(self) -> None:
        self.delivered: list[dict[str, Any]] = []

    def notify(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        action_link: Optional[str] = None,
    ) -> None:
        item = {
            "user_id": user_id,
            "type": type,
            "title": title,
            "message": message,
            "action_link": action_link,
        }
        self.delivered.append(item)
        logger.info("notification", **item)


class WebhookNotificationDispatcher:
    """POST каждого уведомления на внешний webhook (JSON, Bearer-токен)."""

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not url:
            raise ValueError("webhook url is required")
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = headers

    def notify(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        action_link: Optional[str] = None,
    ) -> None:
        body = {
            "user_id": user_id,
            "type": type,
            "title": title,
            "message": message,
            "action_link": action_link,
        }
        try:
            resp = self._client.post(self.url, json=body, headers=self._headers)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("notification_webhook_error", url=self.url, error=str(e))
            raise NotificationDeliveryError(f"webhook_http_error: {e}") from e

    def close(self) -> None:
        self._client.close()


_dispatcher: Optional[NotificationDispatcher] = None


def get_dispatcher() -> NotificationDispatcher:
    """Process-wide dispatcher chosen from settings (webhook if configured)."""
    global _dispatcher
    if _dispatcher is None:
        if settings.NOTIFICATION_WEBHOOK_URL:
            _dispatcher = WebhookNotificationDispatcher(
                settings.NOTIFICATION_WEBHOOK_URL,
                token=settings.NOTIFICATION_WEBHOOK_TOKEN,
                timeout=float(settings.NOTIFICATION_TIMEOUT_SECONDS),
            )
        else:
            _dispatcher = LoggingNotificationDispatcher()
    return _dispatcher


def set_dispatcher(dispatcher: Optional[NotificationDispatcher]) -> None:
    """Override (or reset with None) the process-wide dispatcher."""
    global _dispatcher
    _dispatcher = dispatcher


def dispatch_pending_notifications(
    session: Session,
    dispatcher: Optional[NotificationDispatcher] = None,
    *,
    limit: Optional[int] = None,
    event_ids: Optional[list[int]] = None,
) -> dict[str, int]:
    """
    Relay due notification events (pending, or failed and due for retry),
    optionally restricted to ``event_ids``.
    Returns {"sent": n, "failed": m}.
    """
    dispatcher = dispatcher or get_dispatcher()
    batch = OutboxEvent.batch_fetch(
        session,
        channel=CHANNEL_NOTIFICATION,
        statuses=("pending", "failed"),
        limit=limit or settings.OUTBOX_BATCH_SIZE,
        max_attempts=settings.STOCK_EFFECT_MAX_ATTEMPTS,
        ids=event_ids,
    )
    sent = failed = 0
    for ev in batch:
        p = ev.payload or {}
        try:
            dispatcher.notify(
                int(p["user_id"]),
                p.get("type") or ev.event_type,
                p.get("title") or "",
                p.get("message") or "",
                p.get("action_link"),
            )
        except Exception as e:  # any dispatcher failure is recorded and retried
            ev.mark_failed(str(e), retry_in_seconds=settings.NOTIFY_INTERVAL_SECONDS)
            failed += 1
            logger.warning("notification_failed", event_id=ev.id, attempts=ev.attempts, error=str(e))
        else:
            ev.mark_sent()
            sent += 1
    session.commit()
    if sent or failed:
        logger.info("notifications_relayed", sent=sent, failed=failed)
    return {"sent": sent, "failed": failed}


def relay_after_commit(session: Session, dispatcher: Optional[NotificationDispatcher] = None) -> None:
    """
    Eager relay of the notifications the just-committed operation enqueued (and only those);
    the backlog and any failure here are left to the scheduler.
    """
    own = session.info.pop(SESSION_NOTIFICATIONS_KEY, [])
    # отброшенные rollback'ом события не являются persistent
    ids = [ev.id for ev in own if inspect(ev).persistent and ev.id is not None]
    if not settings.EAGER_NOTIFICATIONS or not ids:
        return
    try:
        dispatch_pending_notifications(session, dispatcher, event_ids=ids)
    except Exception as e:  # events stay in the outbox
        session.rollback()
        logger.error("notification_relay_error", error=str(e))



__all__ = [
    "NotificationDeliveryError",
    "relay_after_commit",
    "NotificationDispatcher",
    "LoggingNotificationDispatcher",
    "WebhookNotificationDispatcher",
    "get_dispatcher",
    "set_dispatcher",
    "dispatch_pending_notifications",
]
