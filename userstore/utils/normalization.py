"""Data normalization utilities for consistent data quality."""

from typing import Optional


def normalize_email(email: Optional[str]) -> Optional[str]:
    """
    Normalize email to lowercase.

    Args:
        email: Raw email input

    Returns:
        Lowercased email or None if empty
    """
    if not email:
        return None
    return email.strip().lower() or None


def normalize_name(name: Optional[str]) -> Optional[str]:
    """Collapse internal whitespace; blank becomes None."""
    if name is None:
        return None
    cleaned = " ".join(name.split())
    return cleaned or None


def normalize_username(username: Optional[str]) -> Optional[str]:
    """Strip surrounding whitespace; blank becomes None so it never collides."""
    if username is None:
        return None
    return username.strip() or None
