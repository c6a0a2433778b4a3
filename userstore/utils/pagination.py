"""Pagination utilities for list queries."""

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")

# Pagination limits
DEFAULT_PAGE = 1
DEFAULT_PER_PAGE = 10
MAX_PER_PAGE = 100


def clamp_page(page: int) -> int:
    return page if page >= 1 else DEFAULT_PAGE


def clamp_per_page(per_page: int) -> int:
    """Out-of-range sizes fall back to the default or cap at the maximum."""
    if per_page < 1:
        return DEFAULT_PER_PAGE
    return min(per_page, MAX_PER_PAGE)


@dataclass
class PaginationParams:
    """Pagination parameters, clamped to allowed ranges."""
    page: int = DEFAULT_PAGE
    per_page: int = DEFAULT_PER_PAGE

    def __post_init__(self) -> None:
        self.page = clamp_page(self.page)
        self.per_page = clamp_per_page(self.per_page)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


@dataclass
class PaginatedResponse(Generic[T]):
    """Standard paginated response structure."""
    items: list[T]
    total: int
    page: int
    per_page: int
    pages: int

    @classmethod
    def create(cls, items: list[T], total: int, pagination: PaginationParams) -> "PaginatedResponse[T]":
        pages = (total + pagination.per_page - 1) // pagination.per_page if pagination.per_page > 0 else 0
        return cls(
            items=items,
            total=total,
            page=pagination.page,
            per_page=pagination.per_page,
            pages=pages,
        )
