# backoffice/worker/scheduler.py
"""
APScheduler worker:
- stock effect reconciler (retries pending/failed stock effects of order transitions)
- notification relay (outbox -> dispatcher)
- сервисные функции: start/stop/reload_jobs/get_status

Настройки (backoffice/core/config.py):
  SCHEDULER_TIMEZONE=UTC
  RECONCILE_INTERVAL_SECONDS=60
  NOTIFY_INTERVAL_SECONDS=30
"""

from __future__ import annotations

import atexit
import logging
from typing import Any, Dict

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MAX_INSTANCES, EVENT_JOB_MISSED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from backoffice.core.config import settings
from backoffice.core.db import session_scope
from backoffice.services.notifications import dispatch_pending_notifications
from backoffice.services.reconciler import reconcile_pending_stock_effects

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(timezone=settings.SCHEDULER_TIMEZONE or "UTC", daemon=True)

JOB_RECONCILE_STOCK = "reconcile_stock_effects"
JOB_RELAY_NOTIFICATIONS = "relay_notifications"


def _on_scheduler_event(event):
    if event.code == EVENT_JOB_MISSED:
        logger.warning("APScheduler: пропущен запуск job_id=%s", getattr(event, "job_id", "?"))
    elif event.code == EVENT_JOB_MAX_INSTANCES:
        logger.error("APScheduler: достигнут максимум инстансов job_id=%s", getattr(event, "job_id", "?"))
    elif event.code == EVENT_JOB_ERROR:
        logger.error(
            "APScheduler: ошибка в job_id=%s: %s",
            getattr(event, "job_id", "?"),
            getattr(event, "exception", None),
        )


scheduler.add_listener(_on_scheduler_event, EVENT_JOB_MISSED | EVENT_JOB_MAX_INSTANCES | EVENT_JOB_ERROR)


# -------- Jobs -------- #

def run_stock_reconciler() -> Dict[str, int]:
    with session_scope() as db:
        stats = reconcile_pending_stock_effects(db)
    if stats.get("failed"):
        logger.warning("Stock reconciler: %s", stats)
    return stats


def run_notification_relay() -> Dict[str, int]:
    with session_scope() as db:
        return dispatch_pending_notifications(db)


def _add_jobs() -> None:
    scheduler.add_job(
        run_stock_reconciler,
        trigger=IntervalTrigger(seconds=max(1, int(settings.RECONCILE_INTERVAL_SECONDS))),
        id=JOB_RECONCILE_STOCK,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )
    scheduler.add_job(
        run_notification_relay,
        trigger=IntervalTrigger(seconds=max(1, int(settings.NOTIFY_INTERVAL_SECONDS))),
        id=JOB_RELAY_NOTIFICATIONS,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )


# -------- Публичные сервисные функции воркера -------- #

def start() -> None:
    if scheduler.running:
        return
    logger.info("Запуск APScheduler worker")
    _add_jobs()
    scheduler.start()
    logger.info("APScheduler запущен (timezone=%s)", settings.SCHEDULER_TIMEZONE)
    atexit.register(stop)


def stop() -> None:
    """Остановка планировщика (graceful)."""
    if not scheduler.running:
        return
    logger.info("Остановка APScheduler worker")
    scheduler.shutdown(wait=True)
    logger.info("APScheduler остановлен")


def reload_jobs() -> None:
    """Пересоздать задачи (например, после смены интервалов)."""
    for job_id in (JOB_RECONCILE_STOCK, JOB_RELAY_NOTIFICATIONS):
        if scheduler.get_job(job_id) is not None:
            scheduler.remove_job(job_id)
    _add_jobs()
    logger.info("Задачи планировщика пересозданы")


def _iso(dt) -> Any:
    # у ожидающих задач (планировщик не запущен) next_run_time ещё нет
    return dt.isoformat() if dt else None


def get_status() -> Dict[str, Any]:
    jobs = scheduler.get_jobs()
    return {
        "running": bool(scheduler.running),
        "jobs": [
            {
                "id": j.id,
                "next_run_time": _iso(getattr(j, "next_run_time", None)),
            }
            for j in jobs
        ],
    }


__all__ = [
    "scheduler",
    "JOB_RECONCILE_STOCK",
    "JOB_RELAY_NOTIFICATIONS",
    "run_stock_reconciler",
    "run_notification_relay",
    "start",
    "stop",
    "reload_jobs",
    "get_status",
]
