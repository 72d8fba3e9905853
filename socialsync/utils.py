"""Utility functions for SocialSync.

Timestamps, payload navigation, identifiers and token redaction. Every
datetime leaving this module is timezone-aware UTC.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from dateutil import parser as dateutil_parser  # type: ignore[import-untyped]


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite returns them naive)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_datetime(value: str | int | float | datetime | None) -> datetime | None:
    """Parse a platform timestamp into an aware UTC datetime.

    Platforms send ISO8601 strings (with or without offset) or epoch seconds;
    naive values are taken as UTC.

    Raises:
        ValueError: If the value is not a recognisable timestamp

    Example:
        >>> parse_datetime("2024-01-15T10:30:00+02:00").hour
        8
        >>> parse_datetime(0).year
        1970
    """
    if value is None or isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=UTC)
        except (OverflowError, OSError) as exc:
            raise ValueError(f"Timestamp out of range: {value!r}") from exc
    if not isinstance(value, str):
        raise ValueError(f"Invalid timestamp: {value!r}")
    return as_utc(dateutil_parser.isoparse(value))


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_iso(dt: datetime | None) -> str | None:
    """ISO8601 with a 'Z' suffix, as sent to clients.

    Example:
        >>> format_iso(datetime(2024, 1, 15, 10, 30, tzinfo=UTC))
        '2024-01-15T10:30:00Z'
    """
    if dt is None:
        return None
    return as_utc(dt).isoformat().replace("+00:00", "Z")  # type: ignore[union-attr]


def new_id() -> str:
    """Store-of-record identifier (hex uuid4)."""
    return uuid.uuid4().hex


def redact_token(token: str | None) -> str:
    """Shorten a credential for log output.

    Example:
        >>> redact_token("abcdefghijklmnop")
        'abcdefgh...mnop'
        >>> redact_token("short")
        '***'
    """
    if not token:
        return "None"
    return f"{token[:8]}...{token[-4:]}" if len(token) > 12 else "***"


def safe_get(data: Any, *keys: str, default: Any = None) -> Any:
    """Walk nested mappings of an adapter payload.

    Keys may be dotted paths, so ``safe_get(d, "account.acct")`` and
    ``safe_get(d, "account", "acct")`` are equivalent. Anything that is not a
    mapping along the way yields ``default``.

    Example:
        >>> safe_get({"account": {"acct": "ann"}}, "account.acct")
        'ann'
        >>> safe_get({"account": None}, "account.acct", default="")
        ''
    """
    for key in keys:
        for part in key.split("."):
            if not isinstance(data, dict):
                return default
            data = data.get(part)
            if data is None:
                return default
    return data


def normalize_id(id_value: str | int | None) -> str | None:
    """Platform ids arrive as ints or strings; the store keeps strings."""
    if id_value is None:
        return None
    return str(id_value)


__all__ = [
    "as_utc",
    "parse_datetime",
    "utc_now",
    "format_iso",
    "new_id",
    "redact_token",
    "safe_get",
    "normalize_id",
]
