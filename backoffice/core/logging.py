# backoffice/core/logging.py
"""
Логирование back-office.

- stdlib dictConfig (консоль + ротируемые файлы) и structlog поверх него:
  JSON в production или при LOG_FORMAT=json, иначе консольный рендер.
- Контекст запроса (request_id, actor_id, client_ip) через contextvars.
- Маскирование секретов; Decimal/datetime приводятся к строкам (деньги в audit-событиях).
- AuditLogger: каждое изменение состояния (переход заказа, движение склада, счёт, поставка).
- ASGI middleware: X-Request-ID, X-Actor-Id, длительность запроса.

Переменные (backoffice/core/config.py): LOG_PATH, LOG_LEVEL, LOG_FORMAT, ENVIRONMENT.
"""

from __future__ import annotations

import logging
import logging.config
import os
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import structlog

from backoffice.core.config import settings

_ctx_request_id: ContextVar[str] = ContextVar("request_id", default="")
_ctx_actor_id: ContextVar[str] = ContextVar("actor_id", default="")
_ctx_client_ip: ContextVar[str] = ContextVar("client_ip", default="")

_CONTEXT_VARS: Dict[str, ContextVar[str]] = {
    "request_id": _ctx_request_id,
    "actor_id": _ctx_actor_id,
    "client_ip": _ctx_client_ip,
}

_CONFIGURED = False

# health-пробы не засоряют access-лог
_QUIET_PATHS = frozenset({"/health"})

_SECRET_KEYS = ("secret", "password", "token", "dsn", "api_key", "authorization")


def _mask(v: Any) -> str:
    s = str(v)
    return "***" if len(s) <= 6 else s[:3] + "***" + s[-3:]


def redact_secrets(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            k: _mask(v) if any(x in str(k).lower() for x in _SECRET_KEYS) else redact_secrets(v)
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(redact_secrets(v) for v in data)
    return data


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


# ---------- structlog processors ----------
def _inject_context(_, __, event_dict):
    for key, var in _CONTEXT_VARS.items():
        val = var.get()
        if val:
            event_dict.setdefault(key, val)
    return event_dict


def _sanitize(_, __, event_dict):
    return _plain(redact_secrets(event_dict))


def _add_service(_, __, event_dict):
    event_dict["service"] = settings.PROJECT_NAME
    event_dict["env"] = settings.ENVIRONMENT
    return event_dict


# ---------- stdlib dictConfig ----------
def _build_stdlib_dict_config(log_path: Optional[str]) -> dict:
    level = (settings.LOG_LEVEL or "INFO").upper()
    handlers: Dict[str, dict] = {
        "console": {
            "level": level,
            "class": "logging.StreamHandler",
            "formatter": "plain",
            "stream": "ext://sys.stdout",
        },
    }
    if log_path:
        logs_dir = os.path.dirname(log_path) or "."
        os.makedirs(logs_dir, exist_ok=True)
        base, ext = os.path.splitext(os.path.basename(log_path))
        handlers["file"] = {
            "level": level,
            "class": "logging.handlers.RotatingFileHandler",
            "maxBytes": 20 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "plain",
            "filename": log_path,
            "encoding": "utf8",
        }
        handlers["error_file"] = {
            "level": "ERROR",
            "class": "logging.handlers.RotatingFileHandler",
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "plain",
            "filename": os.path.join(logs_dir, f"{base}.errors{ext or '.log'}"),
            "encoding": "utf8",
        }

    names = list(handlers)
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"plain": {"format": "%(message)s"}},
        "handlers": handlers,
        "loggers": {
            "": {"handlers": names, "level": level},
            "uvicorn": {"handlers": names, "level": "INFO", "propagate": False},
            "uvicorn.access": {"handlers": [], "level": "WARNING", "propagate": False},
            "sqlalchemy.engine": {"handlers": names, "level": "WARNING", "propagate": False},
            "apscheduler": {"handlers": names, "level": "WARNING", "propagate": False},
        },
    }


def _configure_structlog() -> None:
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _inject_context,
        _add_service,
        _sanitize,
        structlog.processors.format_exc_info,
    ]
    if settings.is_production or (settings.LOG_FORMAT or "").lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_logging() -> None:
    """Настроить stdlib + structlog один раз на процесс. В тестах файлы не пишутся."""
    global _CONFIGURED
    if _CONFIGURED:
        return
    log_path = None if settings.is_testing else (settings.LOG_PATH or "logs/app.log")
    logging.config.dictConfig(_build_stdlib_dict_config(log_path))
    _configure_structlog()
    _CONFIGURED = True
    get_logger(__name__).info(
        "logging_initialized",
        level=settings.LOG_LEVEL,
        format=settings.LOG_FORMAT,
        python=sys.version.split()[0],
        log_path=os.path.abspath(log_path) if log_path else None,
    )


def get_logger(name: str):
    return structlog.get_logger(name)


# ---------- контекст ----------
def bind_context(**values: Any) -> None:
    """Привязать значения к контексту до конца запроса (request_id, actor_id, client_ip)."""
    for key, val in values.items():
        if val is not None and key in _CONTEXT_VARS:
            _CONTEXT_VARS[key].set(str(val))


@contextmanager
def bound_context(**values: Any):
    tokens: list[Tuple[ContextVar[str], Token]] = []
    for key, val in values.items():
        if val is not None and key in _CONTEXT_VARS:
            var = _CONTEXT_VARS[key]
            tokens.append((var, var.set(str(val))))
    try:
        yield
    finally:
        for var, tok in reversed(tokens):
            var.reset(tok)


# ---------- audit ----------
class AuditLogger:
    """Журнал изменений домена; отдельный logger "audit" удобно выносить в свой sink."""

    def __init__(self) -> None:
        self.logger = get_logger("audit")

    def log_data_change(
        self,
        actor_id: int | str | None,
        action: str,
        resource_type: str,
        resource_id: str | int,
        changes: dict[str, Any],
    ) -> None:
        self.logger.info(
            action,
            audit=True,
            actor_id=actor_id,
            resource=f"{resource_type}:{resource_id}",
            changes=changes,
        )

    def log_permission_denied(self, actor_id: int | str | None, reason: str, resource: str) -> None:
        self.logger.warning("permission_denied", audit=True, actor_id=actor_id, reason=reason, resource=resource)


audit_logger = AuditLogger()


# ---------- ASGI middleware ----------
class LoggingContextMiddleware:
    """X-Request-ID (читается или генерируется, возвращается в ответе), X-Actor-Id, длительность."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        headers = {k.decode("latin-1").lower(): v.decode("latin-1") for k, v in scope.get("headers", [])}
        request_id = headers.get("x-request-id") or uuid.uuid4().hex
        client = scope.get("client") or ("", 0)
        path = scope.get("path", "")
        method = scope.get("method", "")
        status_code = 500

        async def _send(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 200)
                message.setdefault("headers", [])
                message["headers"] = list(message["headers"]) + [(b"x-request-id", request_id.encode())]
            await send(message)

        lg = get_logger("http")
        start = time.perf_counter()
        with bound_context(request_id=request_id, actor_id=headers.get("x-actor-id"), client_ip=client[0]):
            try:
                await self.app(scope, receive, _send)
            finally:
                log = lg.debug if path in _QUIET_PATHS else lg.info
                log(
                    "request",
                    method=method,
                    path=path,
                    status=status_code,
                    duration_ms=round((time.perf_counter() - start) * 1000.0, 2),
                )


__all__ = [
    "setup_logging",
    "get_logger",
    "bind_context",
    "bound_context",
    "AuditLogger",
    "audit_logger",
    "LoggingContextMiddleware",
    "redact_secrets",
]
