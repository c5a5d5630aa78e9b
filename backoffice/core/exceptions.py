# backoffice/core/exceptions.py
"""
Domain exceptions and their HTTP rendering.

Every failure leaves the API as application/problem+json with the same envelope the
routers use for success: {success: false, message, code, retryable}, plus RFC 7807
fields (type, title, status, detail, instance) and ``extra`` with the exception's data.

Status mapping:
  AuthenticationError -> 401, AuthorizationError -> 403, NotFoundError -> 404,
  ConflictError / InsufficientStockError -> 409,
  BackofficeValidationError / IllegalTransitionError -> 422,
  IntegrityError -> 409, OperationalError -> 503, other SQLAlchemyError -> 500.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from backoffice.core.logging import bound_context, get_logger, redact_secrets

logger = get_logger(__name__)


# =============================================================================
# Domain exceptions
# =============================================================================
class BackofficeException(Exception):
    """Base domain exception: human message + machine code (+ optional data)."""

    default_code = "ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        *,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        http_status: Optional[int] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.extra = extra or {}
        self.headers = headers or {}
        self.http_status = http_status
        super().__init__(self.message)

    def __repr__(self) -> str:  # pragma: no cover
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class AuthenticationError(BackofficeException):
    """No actor could be resolved for the request."""

    default_code = "AUTH_REQUIRED"


class AuthorizationError(BackofficeException):
    """Actor is known but lacks the role (or ownership) required."""

    default_code = "INSUFFICIENT_PERMISSIONS"


class NotFoundError(BackofficeException):
    default_code = "NOT_FOUND"


class BackofficeValidationError(BackofficeException):
    default_code = "VALIDATION_ERROR"


class IllegalTransitionError(BackofficeValidationError):
    """Requested (from, to) pair is not allowed by the status table."""

    default_code = "ILLEGAL_TRANSITION"


class InsufficientStockError(BackofficeException):
    """A decrease would take the stock below zero."""

    default_code = "INSUFFICIENT_STOCK"


class ConflictError(BackofficeException):
    """Concurrent modification detected; safe to retry."""

    default_code = "CONFLICT"
    retryable = True


# =============================================================================
# IntegrityError classification (PostgreSQL / SQLite messages)
# =============================================================================
_INTEGRITY_PATTERNS: tuple[tuple[re.Pattern, str, str], ...] = (
    (
        re.compile(r"duplicate key|unique constraint|unique violation", re.IGNORECASE),
        "DUPLICATE_VALUE",
        "A record with this value already exists",
    ),
    (re.compile(r"foreign key", re.IGNORECASE), "FOREIGN_KEY_ERROR", "Referenced record does not exist"),
    (re.compile(r"not null", re.IGNORECASE), "REQUIRED_FIELD", "Required field is missing"),
    (re.compile(r"check constraint", re.IGNORECASE), "INVALID_VALUE", "Invalid value provided"),
)


def parse_integrity_error(exc: IntegrityError) -> Tuple[str, str]:
    """(message, code) for an IntegrityError."""
    text = str(getattr(exc, "orig", exc))
    for pattern, code, message in _INTEGRITY_PATTERNS:
        if pattern.search(text):
            return message, code
    return "A database constraint was violated", "INTEGRITY_ERROR"


def is_unique_violation(exc: IntegrityError) -> bool:
    return parse_integrity_error(exc)[1] == "DUPLICATE_VALUE"


# =============================================================================
# Rendering
# =============================================================================
_STATUS_BY_TYPE: tuple[tuple[type, int, str], ...] = (
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED, "Authentication required"),
    (AuthorizationError, status.HTTP_403_FORBIDDEN, "Forbidden"),
    (NotFoundError, status.HTTP_404_NOT_FOUND, "Resource not found"),
    (ConflictError, status.HTTP_409_CONFLICT, "Conflict"),
    (InsufficientStockError, status.HTTP_409_CONFLICT, "Insufficient stock"),
    (BackofficeValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation error"),
)


def status_for(exc: BackofficeException) -> Tuple[int, str]:
    for tp, sc, title in _STATUS_BY_TYPE:
        if isinstance(exc, tp):
            return exc.http_status or sc, title
    return exc.http_status or status.HTTP_400_BAD_REQUEST, "Bad request"


def _problem(
    request: Request,
    status_code: int,
    *,
    title: str,
    detail: str,
    code: str,
    retryable: bool = False,
    extra: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body: Dict[str, Any] = {
        "type": f"https://httpstatuses.com/{status_code}",
        "title": title,
        "status": status_code,
        "detail": detail,
        "instance": str(request.url),
        "success": False,
        "message": detail,
        "code": code,
        "retryable": retryable,
    }
    if extra:
        body["extra"] = redact_secrets(extra)
    return JSONResponse(
        status_code=status_code,
        content=body,
        headers=headers or {},
        media_type="application/problem+json",
    )


def _log(request: Request, level: str, event: str, **fields: Any) -> None:
    with bound_context(request_id=request.headers.get("x-request-id")):
        getattr(logger, level)(event, method=request.method, path=request.url.path, **fields)


# =============================================================================
# Handlers
# =============================================================================
async def backoffice_exception_handler(request: Request, exc: BackofficeException) -> JSONResponse:
    sc, title = status_for(exc)
    _log(
        request,
        "warning",
        "domain_error",
        error=type(exc).__name__,
        code=exc.code,
        message=exc.message,
        retryable=exc.retryable,
        extra=exc.extra,
    )
    return _problem(
        request,
        sc,
        title=title,
        detail=exc.message,
        code=exc.code,
        retryable=exc.retryable,
        extra=exc.extra,
        headers=exc.headers,
    )


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    message, code = parse_integrity_error(exc)
    _log(request, "warning", "integrity_error", code=code, error=str(getattr(exc, "orig", exc)))
    return _problem(
        request,
        status.HTTP_409_CONFLICT,
        title="Conflict",
        detail=message,
        code=code,
        retryable=code == "DUPLICATE_VALUE",
    )


async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    _log(request, "error", "db_unavailable", exc_info=exc)
    return _problem(
        request,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        title="Database unavailable",
        detail="Database is temporarily unavailable. Please retry later.",
        code="DB_UNAVAILABLE",
        retryable=True,
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    _log(request, "error", "db_error", exc_info=exc)
    return _problem(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        title="Database error",
        detail="Database operation failed",
        code="DB_ERROR",
    )


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(e.get("loc", ())), "msg": str(e.get("msg", "")), "type": e.get("type")}
        for e in exc.errors()
    ]
    _log(request, "info", "request_invalid", errors=errors)
    return _problem(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        title="Validation error",
        detail="Request validation failed",
        code="REQUEST_VALIDATION_ERROR",
        extra={"errors": errors},
    )


async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    errors = exc.errors(include_url=False, include_context=False, include_input=False)
    _log(request, "warning", "model_invalid", errors=errors)
    return _problem(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        title="Validation error",
        detail="One or more fields failed validation",
        code="VALIDATION_ERROR",
        extra={"errors": [{**e, "loc": list(e.get("loc", ()))} for e in errors]},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    _log(request, "info", "http_error", status=exc.status_code, detail=exc.detail)
    return _problem(
        request,
        exc.status_code,
        title=f"HTTP {exc.status_code}",
        detail=str(exc.detail),
        code=f"HTTP_{exc.status_code}",
        headers=exc.headers,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    _log(request, "error", "unhandled_error", exc_info=exc)
    return _problem(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        title="Internal server error",
        detail="An unexpected error occurred. Please try again later.",
        code="INTERNAL_ERROR",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BackofficeException, backoffice_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    # порядок не важен: Starlette выбирает ближайший класс по MRO
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(OperationalError, operational_error_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


__all__ = [
    "BackofficeException",
    "AuthenticationError",
    "AuthorizationError",
    "BackofficeValidationError",
    "NotFoundError",
    "IllegalTransitionError",
    "InsufficientStockError",
    "ConflictError",
    "parse_integrity_error",
    "is_unique_violation",
    "status_for",
    "register_exception_handlers",
]
