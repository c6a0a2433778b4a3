"""SQLAlchemy ORM models.

The DDL for ``users`` and ``user_infos`` lives in the versioned migration
scripts; these mappings must stay in step with them. The two ledger tables are
owned by the migration runner and created on demand.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from userstore.db.base import Base
from userstore.db.enums import UserRole


class User(Base):
    """
    Account record.

    Owns exactly one UserInfo; deleting the user deletes its info row
    (``user_infos.user_id ... ON DELETE CASCADE``).
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # Stored lower-cased; see utils.normalization.normalize_email
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(
            UserRole,
            name="user_role",
            values_callable=lambda roles: [role.value for role in roles],
            create_constraint=False,
            validate_strings=True,
        ),
        nullable=False,
        default=UserRole.GUEST,
    )
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    info: Mapped["UserInfo"] = relationship(
        back_populates="user",
        uselist=False,
        lazy="joined",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def user_info_id(self) -> uuid.UUID | None:
        return self.info.id if self.info is not None else None


class UserInfo(Base):
    """Profile details for a user."""

    __tablename__ = "user_infos"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    middle_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    username: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    user: Mapped[User] = relationship(back_populates="info")


class SchemaMigration(Base):
    """Ledger row: one per applied migration version."""

    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    checksum: Mapped[str] = mapped_column(String(96), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    execution_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class MigrationLock(Base):
    """
    Single-row runner lock for stores without advisory locks (SQLite).

    The primary key is pinned to 1, so a second holder fails on insert.
    """

    __tablename__ = "schema_migrations_lock"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
