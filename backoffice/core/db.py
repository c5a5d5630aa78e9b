# backoffice/core/db.py
"""
Engine and sessions (sync SQLAlchemy 2.x).

- Движок создаётся лениво: импорт модуля не открывает соединений.
- URL и пул из settings: PostgreSQL (psycopg2) в проде, SQLite для разработки и тестов.
- PostgreSQL on-connect: UTC, application_name, statement_timeout.
- Сессии: autoflush=False и expire_on_commit=False. Сервисы сами открывают транзакции
  (locked_transaction), а объекты остаются читаемыми после commit.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator, Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from backoffice.core.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def _on_pg_connect(engine: Engine) -> None:
    app_name = f"{settings.PROJECT_NAME}@{settings.VERSION}"
    timeout_ms = int(settings.POSTGRES_STATEMENT_TIMEOUT_MS or 0)

    @event.listens_for(engine, "connect")
    def _setup(dbapi_conn, _record):  # pragma: no cover
        cur = dbapi_conn.cursor()
        try:
            cur.execute("SET TIME ZONE 'UTC'")
            cur.execute("SET application_name = %s", (app_name,))
            if timeout_ms > 0:
                cur.execute(f"SET statement_timeout = {timeout_ms}")
        finally:
            cur.close()


def get_session_factory() -> sessionmaker:
    global _engine, _session_factory
    if _session_factory is None:
        _engine = create_engine(settings.sqlalchemy_url, **settings.sqlalchemy_engine_options)
        if settings.sqlalchemy_driver == "postgresql":
            _on_pg_connect(_engine)
        _session_factory = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        logger.info("DB engine created (driver=%s)", settings.sqlalchemy_driver)
    return _session_factory


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: одна сессия на запрос, всегда закрывается."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Сессия для фоновых задач: commit при выходе, rollback при ошибке."""
    db = get_session_factory()()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """create_all для SQLite-режима разработки; в PostgreSQL схему ведёт Alembic."""
    from backoffice.models import Base

    get_session_factory()
    Base.metadata.create_all(bind=_engine)
    logger.info("DB schema ensured (create_all)")


def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


def health_check_db() -> dict:
    try:
        with get_session_factory()() as db:
            db.execute(text("SELECT 1"))
        return {"ok": True, "error": None, "driver": settings.sqlalchemy_driver}
    except Exception as e:  # отдаём в /health как degraded
        logger.error("DB health check failed: %s", e)
        return {"ok": False, "error": str(e), "driver": settings.sqlalchemy_driver}


__all__ = [
    "get_session_factory",
    "get_db",
    "session_scope",
    "init_db",
    "dispose_engine",
    "health_check_db",
]
