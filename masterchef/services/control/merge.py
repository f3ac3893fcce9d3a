"""Layered key/value merge resolver used for pillars and policy inputs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Iterable, Mapping

from masterchef.foundation.common.clone import json_clone

from .errors import ValidationError
from .storage import dataclass_to_dict


class MergeStrategy(StrEnum):
    MERGE_FIRST = "merge-first"
    MERGE_LAST = "merge-last"
    OVERWRITE = "overwrite"
    REMOVE = "remove"


@dataclass
class Layer:
    """A named mapping folded into the merge accumulator in order."""

    name: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: "Layer | Mapping[str, Any]") -> "Layer":
        if isinstance(value, Layer):
            return value
        data = value.get("data") or {}
        if not isinstance(data, Mapping):
            raise ValidationError("layer data must be a mapping")
        return cls(name=str(value.get("name") or ""), data=dict(data))


@dataclass
class PillarResolveRequest:
    strategy: str = MergeStrategy.MERGE_LAST
    layers: list[Layer] = field(default_factory=list)
    lookup: str = ""
    default: Any = None


@dataclass
class PillarResolveResult:
    strategy: MergeStrategy
    layers: list[str]
    merged: dict[str, Any]
    found: bool = True
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return dataclass_to_dict(self)


def normalize_strategy(raw: str | None) -> MergeStrategy:
    try:
        return MergeStrategy((raw or "").strip().lower())
    except ValueError as exc:
        raise ValidationError(
            "strategy must be one of merge-first, merge-last, overwrite, remove"
        ) from exc


def _clone_mapping(data: Mapping[str, Any] | None) -> dict[str, Any]:
    cloned = json_clone(dict(data or {}))
    return cloned if isinstance(cloned, dict) else {}


def apply_strategy(dest: dict[str, Any], src: Mapping[str, Any], strategy: MergeStrategy) -> None:
    """Fold *src* into *dest* in place according to *strategy*."""

    for key, value in src.items():
        existing = dest.get(key)
        both_mappings = isinstance(existing, dict) and isinstance(value, Mapping)
        if strategy is MergeStrategy.OVERWRITE:
            dest[key] = json_clone(value)
        elif strategy is MergeStrategy.MERGE_FIRST:
            if key not in dest:
                dest[key] = json_clone(value)
            elif both_mappings:
                apply_strategy(existing, value, strategy)
        else:
            if strategy is MergeStrategy.REMOVE and value is None:
                dest.pop(key, None)
            elif key in dest and both_mappings:
                apply_strategy(existing, value, strategy)
            else:
                dest[key] = json_clone(value)


def lookup_path(data: Mapping[str, Any], path: str) -> tuple[Any, bool]:
    """Walk a dotted *path* through nested mappings.

    Returns ``(value, True)`` when every segment resolves, otherwise
    ``(None, False)``. Empty segments never resolve.
    """

    current: Any = data
    for part in path.split("."):
        part = part.strip()
        if not part or not isinstance(current, Mapping) or part not in current:
            return None, False
        current = current[part]
    return current, True


def merge_layers(layers: Iterable[Layer | Mapping[str, Any]], strategy: MergeStrategy) -> tuple[dict[str, Any], list[str]]:
    merged: dict[str, Any] = {}
    names: list[str] = []
    for raw in layers:
        layer = Layer.coerce(raw)
        names.append(layer.name.strip())
        apply_strategy(merged, _clone_mapping(layer.data), strategy)
    return merged, names


def resolve_pillar(request: PillarResolveRequest) -> PillarResolveResult:
    strategy = normalize_strategy(request.strategy)
    merged, names = merge_layers(request.layers, strategy)
    result = PillarResolveResult(strategy=strategy, layers=names, merged=merged, value=merged)
    lookup = (request.lookup or "").strip()
    if lookup:
        value, found = lookup_path(merged, lookup)
        result.found = found
        result.value = value if found else request.default
    return result


__all__ = [
    "Layer",
    "MergeStrategy",
    "PillarResolveRequest",
    "PillarResolveResult",
    "apply_strategy",
    "lookup_path",
    "merge_layers",
    "normalize_strategy",
    "resolve_pillar",
]
