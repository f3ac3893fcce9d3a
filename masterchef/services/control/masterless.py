"""Masterless mode: render state templates from locally resolved pillars."""

from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable, Mapping

from masterchef.foundation.common.strings import normalize_string_list
from masterchef.foundation.common.timeutils import Clock, utc_now

from .errors import ConflictError, ValidationError
from .merge import Layer, MergeStrategy, PillarResolveRequest, lookup_path, normalize_strategy, resolve_pillar
from .storage import dataclass_to_dict

TOKEN_PATTERN = re.compile(r"\{\{\s*([a-zA-Z0-9_.-]+)\s*\}\}")


@dataclass
class MasterlessMode:
    enabled: bool = False
    state_root: str = ""
    default_strategy: MergeStrategy = MergeStrategy.MERGE_LAST
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclass_to_dict(self)


@dataclass
class MasterlessRenderResult:
    rendered_state: str
    resolved_pillar: dict[str, Any]
    lookups: dict[str, Any] = field(default_factory=dict)
    missing_tokens: list[str] = field(default_factory=list)
    deterministic: bool = True
    effective_mode: MasterlessMode = field(default_factory=MasterlessMode)
    effective_strategy: MergeStrategy = MergeStrategy.MERGE_LAST

    def to_dict(self) -> dict[str, Any]:
        return dataclass_to_dict(self)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return json.dumps(value, sort_keys=True)


def render_template(
    template: str, pillar: Mapping[str, Any], variables: Mapping[str, str]
) -> tuple[str, list[str]]:
    """Substitute ``{{ pillar.<path> }}`` and ``{{ var.<name> }}`` tokens.

    Unresolvable tokens are left verbatim and reported in the returned list.
    """

    missing: list[str] = []

    def _substitute(match: re.Match[str]) -> str:
        key = match.group(1).strip()
        if key.startswith("pillar."):
            value, found = lookup_path(pillar, key[len("pillar."):])
            if found:
                return _stringify(value)
        elif key.startswith("var."):
            name = key[len("var."):]
            if name in variables:
                return variables[name]
        missing.append(key)
        return match.group(0)

    rendered = TOKEN_PATTERN.sub(_substitute, template)
    return rendered, normalize_string_list(missing)


class MasterlessStore:
    """Holds the masterless mode switch and renders templates against it."""

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._mode = MasterlessMode(updated_at=clock())

    def mode(self) -> MasterlessMode:
        with self._lock:
            return replace(self._mode)

    def set_mode(
        self, *, enabled: bool, state_root: str = "", default_strategy: str = ""
    ) -> MasterlessMode:
        strategy = (
            normalize_strategy(default_strategy)
            if (default_strategy or "").strip()
            else MergeStrategy.MERGE_LAST
        )
        state_root = (state_root or "").strip()
        if enabled and not state_root:
            raise ValidationError("state_root is required when masterless mode is enabled")
        mode = MasterlessMode(
            enabled=enabled,
            state_root=state_root,
            default_strategy=strategy,
            updated_at=self._clock(),
        )
        with self._lock:
            self._mode = mode
        return replace(mode)

    def render(
        self,
        state_template: str,
        *,
        strategy: str = "",
        layers: Iterable[Layer | Mapping[str, Any]] = (),
        lookups: Iterable[str] = (),
        variables: Mapping[str, str] | None = None,
    ) -> MasterlessRenderResult:
        mode = self.mode()
        if not mode.enabled:
            raise ConflictError("masterless mode is disabled")
        template = (state_template or "").strip()
        if not template:
            raise ValidationError("state_template is required")
        effective = (
            normalize_strategy(strategy) if (strategy or "").strip() else mode.default_strategy
        )
        resolved = resolve_pillar(PillarResolveRequest(strategy=effective, layers=list(layers)))
        found_lookups: dict[str, Any] = {}
        for path in normalize_string_list(lookups):
            value, found = lookup_path(resolved.merged, path)
            if found:
                found_lookups[path] = value
        rendered, missing = render_template(template, resolved.merged, variables or {})
        return MasterlessRenderResult(
            rendered_state=rendered,
            resolved_pillar=resolved.merged,
            lookups=found_lookups,
            missing_tokens=missing,
            deterministic=not missing,
            effective_mode=mode,
            effective_strategy=effective,
        )


__all__ = [
    "MasterlessMode",
    "MasterlessRenderResult",
    "MasterlessStore",
    "TOKEN_PATTERN",
    "render_template",
]
