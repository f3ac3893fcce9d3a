"""Policy input resolution: variable sources folded through the merge resolver."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from masterchef.foundation.common.timeutils import Clock, utc_now

from .errors import ValidationError
from .merge import MergeStrategy, PillarResolveRequest, normalize_strategy, resolve_pillar
from .storage import dataclass_to_dict
from .variable_sources import VariableSourceRegistry, VariableSourceSpec
from .variables import (
    VariableConflict,
    VariableConflictError,
    VariableSourceEdge,
    resolve_variables,
)


@dataclass
class PolicyInputRequest:
    sources: list[VariableSourceSpec | Mapping[str, Any]] = field(default_factory=list)
    strategy: str = ""
    lookup: str = ""
    default: Any = None
    hard_fail: bool = False


@dataclass
class PolicyInputResult:
    strategy: MergeStrategy
    layers: list[str]
    merged: dict[str, Any]
    found: bool
    value: Any
    conflicts: list[VariableConflict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    source_graph: list[VariableSourceEdge] = field(default_factory=list)
    resolved_from: int = 0
    resolved_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclass_to_dict(self)


async def resolve_policy_inputs(
    registry: VariableSourceRegistry,
    request: PolicyInputRequest,
    *,
    clock: Clock = utc_now,
) -> PolicyInputResult:
    """Resolve the request's sources and merge them with its strategy.

    The strategy defaults to ``merge-last`` when blank. Precedence
    diagnostics always come from last-wins resolution regardless of the
    strategy used for the merged value.
    """

    sources: Iterable[Any] = request.sources or []
    sources = list(sources)
    if not sources:
        raise ValidationError("sources are required")
    strategy = (
        normalize_strategy(request.strategy)
        if (request.strategy or "").strip()
        else MergeStrategy.MERGE_LAST
    )
    layers = await registry.resolve_layers(sources)
    diagnostics = resolve_variables(layers, clock=clock)
    pillar = resolve_pillar(
        PillarResolveRequest(
            strategy=strategy,
            layers=layers,
            lookup=(request.lookup or "").strip(),
            default=request.default,
        )
    )
    result = PolicyInputResult(
        strategy=pillar.strategy,
        layers=list(pillar.layers),
        merged=pillar.merged,
        found=pillar.found,
        value=pillar.value,
        conflicts=list(diagnostics.conflicts),
        warnings=list(diagnostics.warnings),
        source_graph=list(diagnostics.source_graph),
        resolved_from=len(layers),
        resolved_at=clock(),
    )
    if request.hard_fail and result.conflicts:
        raise VariableConflictError("policy input precedence conflict detected", result)
    return result


__all__ = ["PolicyInputRequest", "PolicyInputResult", "resolve_policy_inputs"]
