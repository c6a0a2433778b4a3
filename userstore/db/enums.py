"""User-related enums."""

from enum import Enum


class UserRole(str, Enum):
    """
    User roles, highest privilege first.

    Values match the ``user_role`` enum type in the schema.
    """

    OWNER = "Owner"
    ADMIN = "Admin"
    EMPLOYEE = "Employee"
    GUEST = "Guest"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_
