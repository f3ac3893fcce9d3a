"""Structural copies used at store boundaries."""

from __future__ import annotations

import json
from copy import deepcopy
from typing import Any, TypeVar

T = TypeVar("T")


def deep_clone(value: T) -> T:
    """Return an independently owned copy of *value*.

    ``datetime`` values are immutable and therefore shared, which matches the
    copy-by-value contract for optional timestamps.
    """

    return deepcopy(value)


def json_clone(value: Any) -> Any:
    """Clone a JSON-compatible tree through a serialization round trip.

    Tuples become lists and non-string keys are coerced to strings, so the
    result only ever contains plain JSON types.
    """

    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


__all__ = ["deep_clone", "json_clone"]
