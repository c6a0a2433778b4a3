"""User service - atomic CRUD over users and their profiles.

Every public function runs in exactly one transaction on the given session and
commits (or rolls back) before returning. Timestamps come from the store
(``now()`` / ``CURRENT_TIMESTAMP``), never from the caller. Results are
returned as Pydantic read models so they stay valid after the session closes.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

from sqlalchemy import Select, delete, func, or_, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from userstore.core.errors import (
    DuplicateEmail,
    DuplicateUsername,
    InvalidRole,
    NotFound,
    OperationTimeout,
    StoreUnavailable,
)
from userstore.core.security import verify_password
from userstore.core.structured_logging import build_log_context
from userstore.core.timeouts import Deadline, enforce_deadline, is_timeout_error
from userstore.db.enums import UserRole
from userstore.db.models import User, UserInfo
from userstore.db.session import SQLITE_BEGIN_OPTION
from userstore.schemas.user import (
    UserFilter,
    UserInfoCreate,
    UserInfoRead,
    UserInfoUpdate,
    UserRead,
)
from userstore.utils.normalization import normalize_email
from userstore.utils.pagination import PaginationParams

logger = logging.getLogger(__name__)

# Constraint names (PostgreSQL) and column paths (SQLite error text)
EMAIL_CONFLICT_MARKERS = ("uq_users_email", "users.email")
USERNAME_CONFLICT_MARKERS = ("uq_user_infos_username", "user_infos.username")


def _conflict_target(error: IntegrityError) -> str | None:
    constraint_name = getattr(getattr(error.orig, "diag", None), "constraint_name", None)
    message = str(error.orig) if error.orig else str(error)
    haystack = f"{constraint_name or ''} {message}"
    if any(marker in haystack for marker in EMAIL_CONFLICT_MARKERS):
        return "email"
    if any(marker in haystack for marker in USERNAME_CONFLICT_MARKERS):
        return "username"
    return None


@contextmanager
def _transaction(
    db: Session,
    timeout: float | None,
    operation: str,
    read_only: bool = False,
) -> Iterator[None]:
    """
    Run the body as one transaction bounded by ``timeout``.

    Store errors are translated into the userstore taxonomy after rollback.
    Read-only bodies start a deferred SQLite transaction so they do not queue
    behind writers.
    """
    deadline = Deadline.after(timeout)
    options = {SQLITE_BEGIN_OPTION: "DEFERRED"} if read_only else None
    try:
        with enforce_deadline(db.connection(execution_options=options), deadline):
            yield
            db.flush()
            deadline.check()
        db.commit()
    except OperationTimeout:
        db.rollback()
        logger.warning(f"{operation} exceeded its deadline; rolled back")
        raise
    except IntegrityError as exc:
        db.rollback()
        target = _conflict_target(exc)
        if target == "email":
            raise DuplicateEmail("A user with this email already exists") from exc
        if target == "username":
            raise DuplicateUsername("A user with this username already exists") from exc
        raise
    except DBAPIError as exc:
        db.rollback()
        if is_timeout_error(exc):
            logger.warning(f"{operation} exceeded its deadline; rolled back")
            raise OperationTimeout(f"{operation} exceeded its deadline") from exc
        if isinstance(exc, OperationalError):
            raise StoreUnavailable(f"Store unavailable during {operation}: {exc.orig}") from exc
        raise
    except Exception:
        db.rollback()
        raise


def _coerce_role(role: UserRole | str) -> UserRole:
    if isinstance(role, UserRole):
        return role
    if isinstance(role, str) and UserRole.has_value(role):
        return UserRole(role)
    allowed = ", ".join(r.value for r in UserRole)
    raise InvalidRole(f"Unknown role {role!r}; expected one of: {allowed}")


def _as_uuid(user_id: uuid.UUID | str) -> uuid.UUID:
    if isinstance(user_id, uuid.UUID):
        return user_id
    try:
        return uuid.UUID(str(user_id))
    except ValueError:
        raise NotFound(f"User {user_id} not found")


def _require_email(email: str) -> str:
    normalized = normalize_email(email)
    if not normalized:
        raise ValueError("email is required")
    return normalized


def _load_user(db: Session, user_id: uuid.UUID) -> User:
    user = db.execute(select(User).where(User.id == user_id)).unique().scalar_one_or_none()
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return user


# =============================================================================
# Create / read
# =============================================================================


def create_user(
    db: Session,
    email: str,
    password_hash: str,
    role: UserRole | str,
    info: UserInfoCreate | Mapping[str, Any] | None = None,
    timeout: float | None = None,
) -> UserRead:
    """
    Create a user and its profile atomically.

    Raises:
        DuplicateEmail: email (compared case-insensitively) is taken
        DuplicateUsername: ``info.username`` is taken
        InvalidRole: role is not a UserRole value
    """
    normalized_email = _require_email(email)
    user_role = _coerce_role(role)
    if info is None:
        info = UserInfoCreate()
    elif not isinstance(info, UserInfoCreate):
        info = UserInfoCreate.model_validate(dict(info))

    with _transaction(db, timeout, "create_user"):
        user = User(email=normalized_email, password_hash=password_hash, role=user_role)
        user.info = UserInfo(**info.model_dump())
        db.add(user)
        db.flush()
        db.refresh(user)
        result = UserRead.model_validate(user)

    logger.info(
        "Created user",
        extra=build_log_context(user_id=str(result.id), email=normalized_email, operation="create_user"),
    )
    return result


def get_user(db: Session, user_id: uuid.UUID | str, timeout: float | None = None) -> UserRead:
    uid = _as_uuid(user_id)
    with _transaction(db, timeout, "get_user", read_only=True):
        result = UserRead.model_validate(_load_user(db, uid))
    return result


def get_user_by_email(db: Session, email: str, timeout: float | None = None) -> UserRead:
    """Look up a user by email, ignoring case."""
    normalized_email = normalize_email(email)
    if not normalized_email:
        raise NotFound("User not found")

    with _transaction(db, timeout, "get_user_by_email", read_only=True):
        user = db.execute(
            select(User).where(User.email == normalized_email)
        ).unique().scalar_one_or_none()
        if user is None:
            raise NotFound("User not found")
        result = UserRead.model_validate(user)
    return result


def verify_user(db: Session, email: str, password: str, timeout: float | None = None) -> bool:
    """
    Check sign-in credentials against the stored Argon2 hash.

    Raises:
        NotFound: no user has this email
    """
    user = get_user_by_email(db, email, timeout=timeout)
    verified = verify_password(user.password_hash, password)
    if not verified:
        logger.info(
            "Password verification failed",
            extra=build_log_context(user_id=str(user.id), operation="verify_user"),
        )
    return verified


# =============================================================================
# Update / delete
# =============================================================================


def update_user_info(
    db: Session,
    user_id: uuid.UUID | str,
    data: UserInfoUpdate | Mapping[str, Any],
    timeout: float | None = None,
) -> UserInfoRead:
    """
    Write only the profile fields present in ``data``.

    ``updated_at`` is refreshed by the store even when no field changes.
    """
    uid = _as_uuid(user_id)
    if not isinstance(data, UserInfoUpdate):
        data = UserInfoUpdate.model_validate(dict(data))
    changes = data.model_dump(exclude_unset=True)

    with _transaction(db, timeout, "update_user_info"):
        info = db.execute(select(UserInfo).where(UserInfo.user_id == uid)).scalar_one_or_none()
        if info is None:
            raise NotFound(f"User {uid} not found")
        for field, value in changes.items():
            setattr(info, field, value)
        info.updated_at = func.now()
        db.flush()
        db.refresh(info)
        result = UserInfoRead.model_validate(info)

    logger.info(
        f"Updated profile fields: {sorted(changes) or 'none'}",
        extra=build_log_context(user_id=str(uid), operation="update_user_info"),
    )
    return result


def update_user(
    db: Session,
    user_id: uuid.UUID | str,
    *,
    email: str | None = None,
    password_hash: str | None = None,
    role: UserRole | str | None = None,
    timeout: float | None = None,
) -> UserRead:
    """Change account fields; omitted arguments are left as they are."""
    uid = _as_uuid(user_id)
    new_email = _require_email(email) if email is not None else None
    new_role = _coerce_role(role) if role is not None else None

    with _transaction(db, timeout, "update_user"):
        user = _load_user(db, uid)
        if new_email is not None:
            user.email = new_email
        if password_hash is not None:
            user.password_hash = password_hash
        if new_role is not None:
            user.role = new_role
        user.updated_at = func.now()
        db.flush()
        db.refresh(user)
        result = UserRead.model_validate(user)

    logger.info("Updated user", extra=build_log_context(user_id=str(uid), operation="update_user"))
    return result


def delete_user(db: Session, user_id: uuid.UUID | str, timeout: float | None = None) -> None:
    """Delete a user; the store cascades the delete to its profile."""
    uid = _as_uuid(user_id)
    with _transaction(db, timeout, "delete_user"):
        result = db.execute(
            delete(User).where(User.id == uid).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFound(f"User {uid} not found")

    logger.info("Deleted user", extra=build_log_context(user_id=str(uid), operation="delete_user"))


# =============================================================================
# Listing
# =============================================================================


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _filter_clauses(filters: UserFilter) -> list:
    clauses = []
    if filters.role is not None:
        clauses.append(User.role == filters.role)
    search = (filters.search or "").strip()
    if search:
        pattern = f"%{_escape_like(search)}%"
        clauses.append(
            or_(
                User.email.ilike(pattern, escape="\\"),
                UserInfo.username.ilike(pattern, escape="\\"),
                UserInfo.first_name.ilike(pattern, escape="\\"),
                UserInfo.last_name.ilike(pattern, escape="\\"),
            )
        )
    return clauses


def _filtered(query: Select, filters: UserFilter) -> Select:
    return query.join(UserInfo, UserInfo.user_id == User.id).where(*_filter_clauses(filters))


def list_users(
    db: Session,
    filters: UserFilter | None = None,
    timeout: float | None = None,
) -> list[UserRead]:
    """One page of users, newest first."""
    filters = filters or UserFilter()
    pagination = PaginationParams(page=filters.page, per_page=filters.per_page)
    query = (
        _filtered(select(User), filters)
        .order_by(User.created_at.desc(), User.email)
        .offset(pagination.offset)
        .limit(pagination.per_page)
    )

    with _transaction(db, timeout, "list_users", read_only=True):
        users = db.execute(query).unique().scalars().all()
        result = [UserRead.model_validate(user) for user in users]
    return result


def count_users(
    db: Session,
    filters: UserFilter | None = None,
    timeout: float | None = None,
) -> int:
    """Number of users matching ``filters`` (paging ignored)."""
    filters = filters or UserFilter()
    query = _filtered(select(func.count(User.id)), filters)

    with _transaction(db, timeout, "count_users", read_only=True):
        total = db.execute(query).scalar_one()
    return total
