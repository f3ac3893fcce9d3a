"""Variable precedence resolution with conflict diagnostics."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from masterchef.foundation.common.clone import json_clone
from masterchef.foundation.common.timeutils import Clock, utc_now

from .errors import ConflictError
from .merge import Layer
from .storage import dataclass_to_dict

OVERRIDE_RESOLUTION = "current layer overrides previous value"
OVERRIDE_HINT = (
    "review variable precedence or split environment-specific keys to avoid accidental overrides"
)


@dataclass
class VariableConflict:
    path: str
    previous_layer: str
    current_layer: str
    previous_value: Any
    current_value: Any
    resolution: str = OVERRIDE_RESOLUTION
    hint: str = OVERRIDE_HINT


@dataclass
class VariableSourceEdge:
    path: str
    from_layer: str
    to_layer: str
    action: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "from": self.from_layer, "to": self.to_layer, "action": self.action}


@dataclass
class VariableResolveResult:
    merged: dict[str, Any] = field(default_factory=dict)
    precedence: list[str] = field(default_factory=list)
    conflicts: list[VariableConflict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    source_graph: list[VariableSourceEdge] = field(default_factory=list)
    generated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclass_to_dict(self)


class VariableConflictError(ConflictError):
    """Raised by hard-fail resolution; ``result`` carries the diagnostics."""

    def __init__(self, reason: str, result: Any) -> None:
        super().__init__(reason)
        self.result = result


class _Tracker:
    def __init__(self, result: VariableResolveResult) -> None:
        self.result = result
        self.last_layer: dict[str, str] = {}
        self.overrides: dict[str, int] = {}

    def merge(self, layer: str, dest: dict[str, Any], src: Mapping[str, Any], prefix: str = "") -> None:
        for key, raw in src.items():
            path = f"{prefix}.{key}" if prefix else key
            existing = dest.get(key)
            if key in dest and isinstance(existing, dict) and isinstance(raw, Mapping):
                self.last_layer[path] = layer
                self.merge(layer, existing, raw, path)
                continue
            if key not in dest and isinstance(raw, Mapping) and raw:
                # every leaf gets its own set edge
                dest[key] = {}
                self.last_layer[path] = layer
                self.merge(layer, dest[key], raw, path)
                continue
            value = json_clone(raw)
            if key not in dest:
                dest[key] = value
                self._record(path, layer, "", "set")
                continue
            previous_layer = self.last_layer.get(path, "")
            previous_value = existing
            if not _same_value(previous_value, value):
                self.result.conflicts.append(
                    VariableConflict(
                        path=path,
                        previous_layer=previous_layer,
                        current_layer=layer,
                        previous_value=json_clone(previous_value),
                        current_value=json_clone(value),
                    )
                )
                self.overrides[path] = self.overrides.get(path, 0) + 1
            dest[key] = value
            self._record(path, layer, previous_layer, "override")

    def _record(self, path: str, layer: str, previous: str, action: str) -> None:
        self.last_layer[path] = layer
        self.result.source_graph.append(
            VariableSourceEdge(path=path, from_layer=previous, to_layer=layer, action=action)
        )


def _same_value(left: Any, right: Any) -> bool:
    return json.dumps(left, sort_keys=True, default=str) == json.dumps(right, sort_keys=True, default=str)


def resolve_variables(
    layers: Iterable[Layer | Mapping[str, Any]],
    *,
    hard_fail: bool = False,
    clock: Clock = utc_now,
) -> VariableResolveResult:
    """Merge *layers* last-wins while recording how each path was reached.

    Each differing override is reported as a conflict; a path overridden
    with a different value two or more times also produces an ambiguity
    warning. With ``hard_fail`` any conflict raises
    :class:`VariableConflictError` after the full result is computed.
    """

    result = VariableResolveResult(generated_at=clock())
    tracker = _Tracker(result)
    for position, raw in enumerate(layers, start=1):
        layer = Layer.coerce(raw)
        name = layer.name.strip() or f"layer-{position}"
        result.precedence.append(name)
        data = json_clone(dict(layer.data or {})) or {}
        tracker.merge(name, result.merged, data)
    for path in sorted(tracker.overrides):
        if tracker.overrides[path] >= 2:
            result.warnings.append(
                f"ambiguous override for {path} across multiple layers "
                f"(latest: {tracker.last_layer.get(path, '')}); "
                "prefer narrowing scope or renaming variable"
            )
    if hard_fail and result.conflicts:
        raise VariableConflictError("variable precedence conflict detected", result)
    return result


__all__ = [
    "VariableConflict",
    "VariableConflictError",
    "VariableResolveResult",
    "VariableSourceEdge",
    "resolve_variables",
]
