"""Base record type and JSON rendering for stored entities."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, TypeVar

from masterchef.foundation.common.timeutils import format_rfc3339_nano

R = TypeVar("R", bound="Record")


def to_jsonable(value: Any) -> Any:
    """Convert records, timestamps and enums into plain JSON types.

    Objects exposing ``to_dict`` render themselves; other dataclasses are
    converted field by field.
    """

    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict) and not isinstance(value, type):
        return to_dict()
    if isinstance(value, datetime):
        return format_rfc3339_nano(value)
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return dataclass_to_dict(value)
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


def dataclass_to_dict(value: Any) -> dict[str, Any]:
    return {item.name: to_jsonable(getattr(value, item.name)) for item in fields(value)}


class Record:
    """Mixin for dataclass entities held by a store.

    Subclasses are dataclasses exposing ``id``, ``created_at`` and
    ``updated_at``. ``to_dict`` omits optional ``*_at`` timestamps that are
    still ``None``.
    """

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for item in fields(self):  # type: ignore[arg-type]
            value = getattr(self, item.name)
            if value is None and item.name.endswith("_at"):
                continue
            payload[item.name] = to_jsonable(value)
        return payload

    def clone(self: R) -> R:
        return deepcopy(self)


__all__ = ["Record", "dataclass_to_dict", "to_jsonable"]
