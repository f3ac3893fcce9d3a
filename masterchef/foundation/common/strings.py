from __future__ import annotations

from typing import Iterable


def normalize(value: str | None) -> str:
    """Trim and lowercase *value*; ``None`` becomes the empty string."""

    if value is None:
        return ""
    return str(value).strip().lower()


def dedupe_preserve_order(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def normalize_string_list(values: Iterable[str] | None) -> list[str]:
    """Lowercase, trim, drop empties, dedupe and sort."""

    if not values:
        return []
    cleaned = (normalize(value) for value in values)
    return sorted(set(item for item in cleaned if item))


def normalize_priority(value: str | None) -> str:
    """Map a free-form priority onto ``high``, ``normal`` or ``low``."""

    lowered = normalize(value)
    return lowered if lowered in ("high", "low") else "normal"


__all__ = [
    "dedupe_preserve_order",
    "normalize",
    "normalize_priority",
    "normalize_string_list",
]
