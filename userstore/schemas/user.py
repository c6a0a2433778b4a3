"""User-related Pydantic schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from userstore.db.enums import UserRole
from userstore.utils.normalization import normalize_name, normalize_username
from userstore.utils.pagination import (
    DEFAULT_PAGE,
    DEFAULT_PER_PAGE,
    clamp_page,
    clamp_per_page,
)


class UserInfoCreate(BaseModel):
    """Profile fields supplied when creating a user."""

    first_name: str | None = Field(None, max_length=255)
    middle_name: str | None = Field(None, max_length=255)
    last_name: str | None = Field(None, max_length=255)
    username: str | None = Field(None, max_length=255)
    avatar_url: str | None = None
    bio: str | None = None

    @field_validator("first_name", "middle_name", "last_name")
    @classmethod
    def clean_name(cls, v: str | None) -> str | None:
        return normalize_name(v)

    @field_validator("username")
    @classmethod
    def clean_username(cls, v: str | None) -> str | None:
        return normalize_username(v)


class UserInfoUpdate(UserInfoCreate):
    """
    Partial profile update.

    Only fields explicitly set are written; pass ``None`` to clear a field.
    """


class UserInfoRead(BaseModel):
    """Profile details as stored."""

    id: UUID
    user_id: UUID
    first_name: str | None
    middle_name: str | None
    last_name: str | None
    username: str | None
    avatar_url: str | None
    bio: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class UserRead(BaseModel):
    """Account with its profile."""

    id: UUID
    email: str
    password_hash: str
    role: UserRole
    user_info_id: UUID
    info: UserInfoRead
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class UserFilter(BaseModel):
    """Listing filter: paging plus optional role and free-text search."""

    page: int = DEFAULT_PAGE
    per_page: int = DEFAULT_PER_PAGE
    role: UserRole | None = None
    search: str | None = None

    @field_validator("page")
    @classmethod
    def clamp_page_number(cls, v: int) -> int:
        return clamp_page(v)

    @field_validator("per_page")
    @classmethod
    def clamp_page_size(cls, v: int) -> int:
        return clamp_per_page(v)
