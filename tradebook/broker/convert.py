"""Parsing helpers for broker payloads.

Brokers report numbers as strings, floats or ints and timestamps as epoch
milliseconds or ISO strings. These helpers normalize them to Decimal and
timezone-aware UTC datetimes.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

ZERO = Decimal("0")

_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def to_decimal(value: Any, default: Decimal | None = ZERO) -> Decimal | None:
    """Convert a broker number to Decimal, returning default for blanks."""
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def to_optional_decimal(value: Any) -> Decimal | None:
    """Like to_decimal but returns None for blank and zero values."""
    result = to_decimal(value, default=None)
    if result is None or result == ZERO:
        return None
    return result


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def ms_to_datetime(value: Any) -> datetime:
    """Epoch milliseconds (int or numeric string) to UTC datetime."""
    if value is None or value == "":
        return utc_now()
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def datetime_to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def parse_iso(value: str | None) -> datetime:
    """Parse ISO-8601 strings including 'Z' and '+0000' offsets."""
    if not value:
        return utc_now()
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _COMPACT_OFFSET.sub(r"\1:\2", text)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def count_decimals(value: str) -> int:
    """Number of significant decimal places in a tick/step string ('0.0100' -> 2)."""
    if "." not in value:
        return 0
    return len(value.split(".", 1)[1].rstrip("0"))
