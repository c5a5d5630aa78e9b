"""
User (actor) model.

Actors are resolved at the HTTP boundary (X-Actor-Id) and carried into every service call.
Roles gate the operations:
- admin / moderator: everything administrative (invoices, expeditions, stock, transitions)
- call_center: order status transitions and discounts
- seller: own products/expeditions, read-only on own invoices
- provider: known role without back-office write access
"""

from __future__ import annotations

import re
from typing import Any, Optional

from sqlalchemy import Boolean, CheckConstraint, Column, Index, String, text
from sqlalchemy.orm import validates

from backoffice.models.base import BaseModel

EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ROLE_ADMIN = "admin"
ROLE_MODERATOR = "moderator"
ROLE_CALL_CENTER = "call_center"
ROLE_SELLER = "seller"
ROLE_PROVIDER = "provider"

ALLOWED_ROLES: frozenset[str] = frozenset(
    {ROLE_ADMIN, ROLE_MODERATOR, ROLE_CALL_CENTER, ROLE_SELLER, ROLE_PROVIDER}
)


class User(BaseModel):
    __tablename__ = "users"

    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    business_name = Column(String(255), nullable=True)

    role = Column(String(32), nullable=False, default=ROLE_SELLER, server_default=text("'seller'"))
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("true"))

    __table_args__ = (
        Index("ix_users_active_role", "is_active", "role"),
        CheckConstraint(
            "role IN ('admin','moderator','call_center','seller','provider')",
            name="user_role_allowed",
        ),
    )

    # ---------------- Normalization / Validation ----------------
    @validates("email")
    def _validate_email(self, _key, value: Optional[str]):
        v = (value or "").lower().strip()
        if not EMAIL_REGEX.match(v):
            raise ValueError("Invalid email format")
        return v

    @validates("role")
    def _validate_role(self, _key, value: str):
        v = (value or "").strip()
        if v not in ALLOWED_ROLES:
            raise ValueError(f"Invalid role: {v}")
        return v

    # ---------------- RBAC helpers ----------------
    def has_role(self, *roles: str) -> bool:
        return bool(self.is_active) and self.role in roles

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def display_name(self) -> str:
        return self.business_name or self.name or f"User#{self.id}"

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "business_name": self.business_name,
            "role": self.role,
            "is_active": bool(self.is_active),
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<User(id={self.id}, email={self.email!r}, role={self.role!r})>"


__all__ = [
    "User",
    "ALLOWED_ROLES",
    "ROLE_ADMIN",
    "ROLE_MODERATOR",
    "ROLE_CALL_CENTER",
    "ROLE_SELLER",
    "ROLE_PROVIDER",
]
