"""Structured logging helpers (PII-safe)."""

import hashlib
from typing import Any


def mask_email(email: str | None) -> str:
    """Return a short stable digest so log lines never carry raw addresses."""
    if not email:
        return ""
    digest = hashlib.sha256(email.strip().lower().encode("utf-8")).hexdigest()
    return f"email:{digest[:12]}"


def build_log_context(
    *,
    user_id: str | None = None,
    email: str | None = None,
    version: int | None = None,
    migration: str | None = None,
    operation: str | None = None,
    duration_ms: int | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = user_id
    if email:
        context["email_hash"] = mask_email(email)
    if version is not None:
        context["migration_version"] = version
    if migration:
        context["migration_name"] = migration
    if operation:
        context["operation"] = operation
    if duration_ms is not None:
        context["duration_ms"] = duration_ms
    return context
