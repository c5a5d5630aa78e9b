"""
Base Pydantic schemas with common patterns.
"""

from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(from_attributes=True, validate_assignment=True, use_enum_values=True)


class OperationResult(BaseModel):
    """Structured result of every operation at the HTTP boundary."""

    success: bool = Field(True, description="Whether the operation succeeded")
    message: str = Field("OK", description="Human readable message")
    code: Optional[str] = Field(None, description="Machine readable code")
    data: Optional[Any] = Field(None, description="Operation payload")

    @classmethod
    def ok(cls, data: Any = None, message: str = "OK", code: str = "OK") -> "OperationResult":
        return cls(success=True, message=message, code=code, data=data)


# Generic type for paginated responses
T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    """Generic paginated response schema."""

    items: list[T] = Field(..., description="List of items")
    total: int = Field(..., ge=0, description="Total number of items")
    page: int = Field(..., ge=1, description="Current page number")
    per_page: int = Field(..., ge=1, le=100, description="Items per page")
    pages: int = Field(..., ge=0, description="Total number of pages")
    has_next: bool = Field(..., description="Whether there is a next page")
    has_prev: bool = Field(..., description="Whether there is a previous page")

    @classmethod
    def create(cls, items: list[T], total: int, page: int, per_page: int) -> "PaginatedResponse[T]":
        """Create paginated response."""
        pages = (total + per_page - 1) // per_page
        return cls(
            items=items,
            total=total,
            page=page,
            per_page=per_page,
            pages=pages,
            has_next=page < pages,
            has_prev=page > 1,
        )
