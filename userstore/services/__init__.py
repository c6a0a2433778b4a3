"""Service layer modules."""

from userstore.services.user_service import (
    count_users,
    create_user,
    delete_user,
    get_user,
    get_user_by_email,
    list_users,
    update_user,
    update_user_info,
    verify_user,
)
from userstore.services import user_service

__all__ = [
    "count_users",
    "create_user",
    "delete_user",
    "get_user",
    "get_user_by_email",
    "list_users",
    "update_user",
    "update_user_info",
    "verify_user",
    "user_service",
]
