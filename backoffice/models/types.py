# backoffice/models/types.py
from __future__ import annotations

from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.types import JSON, TypeDecorator


# ======================================================================
# JSONBCompat: кросс-СУБД совместимый JSONB
# ======================================================================


class JSONBCompat(TypeDecorator):
    """
    Кросс-СУБД тип "JSONB":
    - В PostgreSQL → настоящий JSONB
    - В остальных (SQLite) → обычный JSON

    Использование:
        payload = Column(JSONBCompat, nullable=True)
    """

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_JSONB())
        return dialect.type_descriptor(JSON())


__all__ = ["JSONBCompat"]
