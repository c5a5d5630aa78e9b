# backoffice/models/base.py
"""
Base model with common fields and functionality (SQLAlchemy 2.x, DeclarativeBase).

Содержимое:
- Declarative Base с naming conventions (для alembic и единых имён ограничений/индексов).
- BaseModel: id / created_at / updated_at + сериализация.
- Безопасные блокировки: SELECT FOR UPDATE и pg_advisory_xact_lock.
- locked_transaction(): транзакция под in-process keyed lock + advisory lock (PG),
  с переводом StaleDataError / unique violation в ConflictError.
- paginate(): (items, total) для любых ORM-моделей.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional, TypeVar

from sqlalchemy import DateTime, Integer, MetaData, func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column
from sqlalchemy.orm.exc import StaleDataError

from backoffice.core.exceptions import ConflictError, is_unique_violation
from backoffice.core.locks import advisory_key, lock_arena

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """naive UTC "сейчас" (все DateTime-колонки проекта без timezone)."""
    return datetime.utcnow()


_Q2 = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Decimal, квантованный до 0.01 (ROUND_HALF_UP). None -> 0.00."""
    if value is None:
        return Decimal("0.00")
    if isinstance(value, Decimal):
        d = value
    else:
        try:
            d = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Invalid money value: {value!r}") from e
    return d.quantize(_Q2, rounding=ROUND_HALF_UP)


# --------------------------------------------------------------------------------------
# SQLAlchemy naming conventions
# --------------------------------------------------------------------------------------
NAMING_CONVENTIONS: dict[str, str] = {
    "ix": "ix__%(table_name)s__%(column_0_N_name)s",
    "uq": "uq__%(table_name)s__%(column_0_N_name)s",
    "ck": "ck__%(table_name)s__%(constraint_name)s",
    "fk": "fk__%(table_name)s__%(column_0_N_name)s__%(referred_table_name)s",
    "pk": "pk__%(table_name)s",
}


class Base(DeclarativeBase):
    """Root declarative base (SQLAlchemy 2.x) с naming conventions."""

    metadata = MetaData(naming_convention=NAMING_CONVENTIONS)


class BaseModel(Base):
    """Общий базовый класс для всех моделей проекта."""

    __abstract__ = True

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    def touch(self) -> None:
        self.updated_at = utc_now()

    def __repr__(self) -> str:  # pragma: no cover
        return f"<{self.__class__.__name__} id={getattr(self, 'id', None)}>"

    def to_dict(self) -> dict[str, Any]:
        """Быстрая сериализация всех колонок таблицы."""
        return {col.name: getattr(self, col.name) for col in self.__table__.columns}  # type: ignore[attr-defined]

    def to_public_dict(self) -> dict[str, Any]:
        """Безопасная сериализация для логов/API (даты -> isoformat, Decimal -> str)."""
        out: dict[str, Any] = {}
        for col in self.__table__.columns:  # type: ignore[attr-defined]
            v = getattr(self, col.name)
            if isinstance(v, datetime):
                out[col.name] = v.isoformat()
            elif isinstance(v, Decimal):
                out[col.name] = str(v)
            elif hasattr(v, "value"):
                out[col.name] = v.value
            else:
                out[col.name] = v
        return out


T = TypeVar("T", bound=Base)


# --------------------------------------------------------------------------------------
# SELECT FOR UPDATE / Advisory locks
# --------------------------------------------------------------------------------------
def for_update_by_id(
    session: Session,
    model: type[T],
    obj_id: Any,
    *,
    nowait: bool = False,
    skip_locked: bool = False,
) -> Optional[T]:
    """
    Получить запись под блокировкой SELECT ... FOR UPDATE (на SQLite: обычный SELECT).
    populate_existing: значения перечитываются, даже если объект уже в identity map.
    """
    q = (
        select(model)
        .where(model.id == obj_id)  # type: ignore[attr-defined]
        .with_for_update(nowait=nowait, skip_locked=skip_locked)
        .execution_options(populate_existing=True)
    )
    return session.execute(q).scalars().first()


def is_postgres(session: Session) -> bool:
    bind = session.get_bind()
    return bind is not None and bind.dialect.name == "postgresql"


def pg_advisory_xact_lock(session: Session, key: int) -> None:
    """Транзакционная advisory-блокировка. Держится до конца текущей транзакции."""
    session.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": int(key)})


@contextmanager
def locked_transaction(
    session: Session,
    keys: Sequence[str] = (),
    *,
    commit: bool = True,
) -> Iterator[Session]:
    """
    Транзакция под блокировками по ключам:
      1) in-process keyed lock arena (держится до commit включительно);
      2) pg_advisory_xact_lock на каждый ключ (только PostgreSQL).

    Ошибки оптимистичной блокировки (StaleDataError) и нарушения уникальности
    превращаются в ConflictError (retryable). Любая ошибка -> rollback и проброс.

        with locked_transaction(session, [stock_key(p, w)]):
            ...
    """
    ordered = sorted(set(keys))
    with lock_arena.hold(*ordered):
        try:
            if ordered and is_postgres(session):
                for k in ordered:
                    pg_advisory_xact_lock(session, advisory_key(k))
            yield session
            if commit:
                session.commit()
            else:
                session.flush()
        except StaleDataError as e:
            session.rollback()
            logger.warning("Optimistic lock conflict (keys=%s): %s", ordered, e)
            raise ConflictError(
                "Concurrent modification detected, please retry",
                "CONCURRENT_MODIFICATION",
                extra={"keys": ordered},
            ) from e
        except IntegrityError as e:
            session.rollback()
            if is_unique_violation(e):
                logger.warning("Unique index conflict (keys=%s): %s", ordered, e.orig)
                raise ConflictError(
                    "Conflicting concurrent write, please retry",
                    "DUPLICATE_WRITE",
                    extra={"keys": ordered},
                ) from e
            raise
        except Exception:
            session.rollback()
            raise


# --------------------------------------------------------------------------------------
# Пагинация
# --------------------------------------------------------------------------------------
def paginate(
    session: Session,
    stmt,
    *,
    page: int = 1,
    per_page: int = 50,
    order_by: Sequence[Any] = (),
) -> tuple[list[Any], int]:
    """
    Возвращает (items, total) для готового select(...).
    """
    page = max(1, int(page))
    per_page = max(1, int(per_page))
    total = int(session.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0)
    if order_by:
        stmt = stmt.order_by(*order_by)
    stmt = stmt.offset((page - 1) * per_page).limit(per_page)
    items = list(session.execute(stmt).scalars().all())
    return items, total


__all__ = [
    "Base",
    "BaseModel",
    "NAMING_CONVENTIONS",
    "utc_now",
    "to_money",
    "for_update_by_id",
    "is_postgres",
    "pg_advisory_xact_lock",
    "locked_transaction",
    "paginate",
]
