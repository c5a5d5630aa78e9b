# backoffice/core/dependencies.py
"""
FastAPI dependencies:
- Actor resolution from the X-Actor-Id header (session/auth lives upstream)
- Actor id bound into the logging context
- Pagination
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from backoffice.core.db import get_db
from backoffice.core.exceptions import AuthenticationError
from backoffice.core.logging import bind_context
from backoffice.core.permissions import resolve_actor
from backoffice.models.user import User


# ------------------------------------------------------------------------------
# Actor
# ------------------------------------------------------------------------------
def get_current_actor(
    x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    db: Session = Depends(get_db),
) -> User:
    if not x_actor_id:
        raise AuthenticationError("Authentication required", "AUTH_REQUIRED")
    actor = resolve_actor(db, x_actor_id)
    bind_context(actor_id=actor.id)
    return actor


# ------------------------------------------------------------------------------
# Pagination
# ------------------------------------------------------------------------------
@dataclass
class Pagination:
    page: int = 1
    per_page: int = 20
    max_per_page: int = 100

    def __post_init__(self):
        self.page = max(1, int(self.page or 1))
        p = int(self.per_page or 20)
        self.per_page = min(self.max_per_page, max(1, p))

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


def get_pagination(page: int = 1, per_page: int = 20) -> Pagination:
    return Pagination(page=page, per_page=per_page)


__all__ = ["get_current_actor", "Pagination", "get_pagination"]
