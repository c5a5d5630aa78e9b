# backoffice/models/outbox.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Literal, Optional

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text, or_, select
from sqlalchemy.orm import Mapped, Session, mapped_column

from backoffice.models.base import BaseModel, utc_now
from backoffice.models.types import JSONBCompat

OutboxStatus = Literal["pending", "sent", "failed", "cancelled"]
OutboxChannel = Literal["stock", "notification"]

CHANNEL_STOCK = "stock"
CHANNEL_NOTIFICATION = "notification"

# session.info: уведомления, поставленные текущей операцией (для relay после commit)
SESSION_NOTIFICATIONS_KEY = "outbox_notifications"


class OutboxEvent(BaseModel):
    """
    Outbox: событийная очередь, записываемая в той же транзакции, что и агрегат.

    Два канала:
      - stock: отложенный складской эффект перехода статуса заказа (список движений);
        применяется сразу после commit и/или reconciler'ом до успеха;
        неприменённый эффект отменяется (cancelled) встречным переходом.
      - notification: исходящие уведомления (low stock, invoice generated, ...),
        ретранслируются диспетчером после commit.

    Ретраи: status/attempts/next_attempt_at/last_error. Без внешних ключей -
    запись остаётся для аудита независимо от агрегата.
    """

    __tablename__ = "outbox_events"

    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    aggregate_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False, index=True)

    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONBCompat, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)

    __table_args__ = (
        Index("ix_outbox_channel_status_due", "channel", "status", "next_attempt_at"),
        Index("ix_outbox_aggregate_created", "aggregate_type", "aggregate_id", "created_at"),
        CheckConstraint("attempts >= 0", name="outbox_attempts_nonneg"),
        CheckConstraint("status in ('pending','sent','failed','cancelled')", name="outbox_status_allowed"),
        CheckConstraint("channel in ('stock','notification')", name="outbox_channel_allowed"),
    )

    # -------------------------------------------------------------------------
    # Основные операции
    # -------------------------------------------------------------------------
    @staticmethod
    def enqueue(
        session: Session,
        *,
        aggregate_type: str,
        aggregate_id: int | str,
        event_type: str,
        channel: OutboxChannel,
        payload: dict[str, Any] | None = None,
        next_attempt_in_seconds: Optional[int] = None,
    ) -> OutboxEvent:
        """
        Постановка события в Outbox в текущей транзакции (коммитит вызывающий).
        """
        ev = OutboxEvent(
            aggregate_type=(aggregate_type or "").strip(),
            aggregate_id=str(aggregate_id),
            event_type=(event_type or "").strip(),
            channel=channel,
            payload=payload or {},
            status="pending",
            attempts=0,
        )
        if next_attempt_in_seconds is not None:
            ev.next_attempt_at = utc_now() + timedelta(seconds=int(next_attempt_in_seconds))
        session.add(ev)
        return ev

    @staticmethod
    def notify(
        session: Session,
        *,
        user_id: int,
        type: str,
        title: str,
        message: str,
        action_link: Optional[str] = None,
        aggregate_type: str = "user",
        aggregate_id: int | str | None = None,
    ) -> OutboxEvent:
        """Shortcut: notification event addressed to a user (remembered on session.info)."""
        ev = OutboxEvent.enqueue(
            session,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id if aggregate_id is not None else user_id,
            event_type=type,
            channel=CHANNEL_NOTIFICATION,
            payload={
                "user_id": int(user_id),
                "type": type,
                "title": title,
                "message": message,
                "action_link": action_link,
            },
        )
        session.info.setdefault(SESSION_NOTIFICATIONS_KEY, []).append(ev)
        return ev

    @staticmethod
    def batch_fetch(
        session: Session,
        *,
        channel: OutboxChannel,
        statuses: tuple[str, ...] = ("pending",),
        limit: int = 100,
        due_only: bool = True,
        max_attempts: Optional[int] = None,
        ids: Optional[list[int]] = None,
    ) -> list[OutboxEvent]:
        """
        Получить пачку событий канала (старые первыми).
        - due_only=True вернёт только «готовые к попытке» (next_attempt_at IS NULL или <= now).
        - max_attempts: исключить «припаркованные» события.
        - ids: только перечисленные события.
        """
        q = select(OutboxEvent).where(
            OutboxEvent.channel == channel,
            OutboxEvent.status.in_(statuses),
        )
        if due_only:
            q = q.where(
                or_(
                    OutboxEvent.next_attempt_at.is_(None),
                    OutboxEvent.next_attempt_at <= utc_now(),
                )
            )
        if max_attempts is not None:
            q = q.where(OutboxEvent.attempts < int(max_attempts))
        if ids is not None:
            q = q.where(OutboxEvent.id.in_(ids))
        q = q.order_by(OutboxEvent.id.asc()).limit(max(1, int(limit)))
        return list(session.execute(q).scalars().all())

    @staticmethod
    def open_events(
        session: Session,
        *,
        channel: OutboxChannel,
        aggregate_type: str,
        aggregate_id: int | str,
        before_id: Optional[int] = None,
    ) -> list[OutboxEvent]:
        """Неприменённые (pending/failed, включая «припаркованные») события агрегата, по id."""
        q = select(OutboxEvent).where(
            OutboxEvent.channel == channel,
            OutboxEvent.aggregate_type == aggregate_type,
            OutboxEvent.aggregate_id == str(aggregate_id),
            OutboxEvent.status.in_(("pending", "failed")),
        )
        if before_id is not None:
            q = q.where(OutboxEvent.id < int(before_id))
        return list(session.execute(q.order_by(OutboxEvent.id.asc())).scalars().all())

    # -------------------------------------------------------------------------
    # Workflow-метки
    # -------------------------------------------------------------------------
    def mark_sent(self, *, when: Optional[datetime] = None) -> None:
        self.status = "sent"
        self.processed_at = when or utc_now()
        self.last_error = None
        self.next_attempt_at = None

    def mark_cancelled(self, reason: str, *, when: Optional[datetime] = None) -> None:
        """Снять событие с очереди без применения (например, его отменил следующий переход)."""
        self.status = "cancelled"
        self.processed_at = when or utc_now()
        self.last_error = reason
        self.next_attempt_at = None

    def mark_failed(self, err: str, *, retry_in_seconds: int = 60) -> None:
        """Отметить неуспех и запланировать повтор (линейный backoff по attempts)."""
        self.status = "failed"
        self.attempts = int(self.attempts or 0) + 1
        self.last_error = ((err or "").strip() or None) if err else None
        self.next_attempt_at = utc_now() + timedelta(seconds=int(retry_in_seconds) * self.attempts)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<OutboxEvent id={self.id} {self.channel} agg={self.aggregate_type}:{self.aggregate_id} "
            f"type={self.event_type} status={self.status} attempts={self.attempts}>"
        )


__all__ = [
    "OutboxEvent",
    "OutboxStatus",
    "OutboxChannel",
    "CHANNEL_STOCK",
    "CHANNEL_NOTIFICATION",
    "SESSION_NOTIFICATIONS_KEY",
]
