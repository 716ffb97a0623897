"""Pagination helpers for list endpoints."""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")

MAX_PAGE_SIZE = 200


class Page(BaseModel, Generic[T]):
    items: list[T]
    limit: int
    offset: int
    total: int


def clamp_page(limit: int, offset: int, max_limit: int = MAX_PAGE_SIZE) -> tuple[int, int]:
    """Clamp limit/offset to sane bounds; return (limit, offset)."""
    return max(1, min(limit, max_limit)), max(0, offset)
