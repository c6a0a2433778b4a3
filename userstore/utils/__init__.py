"""Utility modules."""

from userstore.utils.normalization import (
    normalize_email,
    normalize_name,
    normalize_username,
)
from userstore.utils.pagination import (
    PaginatedResponse,
    PaginationParams,
    clamp_page,
    clamp_per_page,
)

__all__ = [
    # Normalization
    "normalize_email",
    "normalize_name",
    "normalize_username",
    # Pagination
    "PaginationParams",
    "PaginatedResponse",
    "clamp_page",
    "clamp_per_page",
]
