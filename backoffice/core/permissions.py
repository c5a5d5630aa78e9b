# backoffice/core/permissions.py
"""
Actor resolution and role checks (framework-free; used by services and the HTTP layer).
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backoffice.core.exceptions import AuthenticationError, AuthorizationError
from backoffice.core.logging import audit_logger
from backoffice.models.user import (
    ROLE_ADMIN,
    ROLE_CALL_CENTER,
    ROLE_MODERATOR,
    ROLE_SELLER,
    User,
)

# Role sets per operation family
STATUS_CHANGERS: frozenset[str] = frozenset({ROLE_ADMIN, ROLE_MODERATOR, ROLE_CALL_CENTER})
BILLING_ADMINS: frozenset[str] = frozenset({ROLE_ADMIN, ROLE_MODERATOR})
STOCK_WRITERS: frozenset[str] = frozenset({ROLE_ADMIN, ROLE_MODERATOR, ROLE_SELLER})
ORDER_CREATORS: frozenset[str] = frozenset({ROLE_ADMIN, ROLE_MODERATOR, ROLE_CALL_CENTER, ROLE_SELLER})
EXPEDITION_CREATORS: frozenset[str] = frozenset({ROLE_ADMIN, ROLE_SELLER})


def resolve_actor(session: Session, actor_id: Any) -> User:
    """Active user by id, else AuthenticationError."""
    try:
        uid = int(actor_id)
    except (TypeError, ValueError):
        raise AuthenticationError("Authentication required", "AUTH_REQUIRED")
    user: Optional[User] = session.execute(
        select(User).where(User.id == uid, User.is_active.is_(True))
    ).scalar_one_or_none()
    if user is None:
        raise AuthenticationError("User not found or inactive", "USER_NOT_FOUND")
    return user


def require_role(actor: Optional[User], roles: frozenset[str] | set[str], *, resource: str) -> User:
    if actor is None:
        raise AuthenticationError("Authentication required", "AUTH_REQUIRED")
    if not actor.has_role(*roles):
        audit_logger.log_permission_denied(
            actor.id, reason=f"role '{actor.role}' not in {sorted(roles)}", resource=resource
        )
        raise AuthorizationError("Insufficient permissions", "INSUFFICIENT_PERMISSIONS")
    return actor


def require_owner_or_admin(actor: User, owner_id: int, *, resource: str) -> None:
    """Sellers may only touch their own resources; admins/moderators anything."""
    if actor.role in BILLING_ADMINS:
        return
    if actor.role == ROLE_SELLER and int(owner_id) == int(actor.id):
        return
    audit_logger.log_permission_denied(actor.id, reason="not the owner", resource=resource)
    raise AuthorizationError("Access denied", "ACCESS_DENIED")


__all__ = [
    "STATUS_CHANGERS",
    "BILLING_ADMINS",
    "STOCK_WRITERS",
    "ORDER_CREATORS",
    "EXPEDITION_CREATORS",
    "resolve_actor",
    "require_role",
    "require_owner_or_admin",
]
