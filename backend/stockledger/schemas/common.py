"""Shared response wrappers."""

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

ItemT = TypeVar("ItemT")


class PaginatedResponse(BaseModel, Generic[ItemT]):
    """One page of a list endpoint, e.g. PaginatedResponse[StockMovementOut]."""
    items: list[ItemT]
    total: int = Field(..., ge=0)
    limit: int
    offset: int
