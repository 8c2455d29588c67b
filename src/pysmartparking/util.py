"""Shared utilities for validation and normalization."""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from .exceptions import ValidationError

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def parse_timestamp(value: str) -> datetime:
    if not isinstance(value, str) or not value:
        raise ValidationError("Timestamp must be a non-empty string.")
    raw = value.strip()
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError("Timestamp is not a valid ISO 8601 value.") from exc
    if parsed.tzinfo is None:
        raise ValidationError("Timestamp must include timezone information.")
    return parsed.astimezone(UTC)


def format_utc_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        raise ValidationError("Timestamp must include timezone information.")
    normalized = value.astimezone(UTC)
    if not normalized.microsecond:
        normalized = normalized.replace(microsecond=0)
    return normalized.isoformat().replace("+00:00", "Z")


def ensure_utc_timestamp(value: str) -> str:
    return format_utc_timestamp(parse_timestamp(value))


def utc_now() -> str:
    return format_utc_timestamp(datetime.now(UTC))


def require_text(value: Any, field: str) -> str:
    if value is None:
        raise ValidationError(f"{field} is required.")
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string.")
    text = value.strip()
    if not text:
        raise ValidationError(f"{field} is required.")
    return text


def require_choice(value: Any, field: str, choices: Iterable[str]) -> str:
    allowed = tuple(choices)
    if value not in allowed:
        raise ValidationError(f"{field} must be one of: {', '.join(allowed)}.")
    return value


def normalize_email(value: Any) -> str:
    email = require_text(value, "email").lower()
    if not _EMAIL_RE.match(email):
        raise ValidationError("email is not a valid address.")
    return email


def sort_key_timestamp(value: str | None) -> datetime:
    if not value:
        return datetime.min.replace(tzinfo=UTC)
    return parse_timestamp(value)
