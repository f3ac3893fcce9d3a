from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_rfc3339_nano(value: datetime) -> str:
    """Render *value* in UTC with trailing fractional zeros trimmed.

    ``2026-01-02T03:04:05.120000+00:00`` renders as
    ``2026-01-02T03:04:05.12Z`` and whole seconds omit the fraction.
    """

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    return text + "Z"


def parse_rfc3339(text: str) -> datetime:
    """Parse an RFC3339 timestamp and normalize it to UTC.

    Raises
    ------
    ValueError
        If *text* is empty or not a valid timestamp with an offset.
    """

    raw = (text or "").strip()
    if not raw:
        raise ValueError("timestamp is required")
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp {text!r} is missing a UTC offset")
    return parsed.astimezone(timezone.utc)


__all__ = ["Clock", "format_rfc3339_nano", "parse_rfc3339", "utc_now"]
