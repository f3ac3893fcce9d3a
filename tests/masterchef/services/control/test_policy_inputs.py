from __future__ import annotations

import pytest

from masterchef.services.control.errors import ValidationError
from masterchef.services.control.merge import MergeStrategy
from masterchef.services.control.policy_inputs import PolicyInputRequest, resolve_policy_inputs
from masterchef.services.control.variable_sources import VariableSourceRegistry
from masterchef.services.control.variables import VariableConflictError


def _inline(name: str, data: dict) -> dict:
    return {"name": name, "type": "inline", "config": {"data": data}}


@pytest.mark.asyncio
async def test_resolves_sources_with_lookup_and_diagnostics(clock) -> None:
    request = PolicyInputRequest(
        sources=[
            _inline("base", {"limits": {"cpu": 1, "mem": "1Gi"}}),
            _inline("prod", {"limits": {"cpu": 4}}),
        ],
        lookup="limits.cpu",
    )

    result = await resolve_policy_inputs(VariableSourceRegistry(), request, clock=clock)

    assert result.strategy is MergeStrategy.MERGE_LAST
    assert result.value == 4
    assert result.found is True
    assert result.merged == {"limits": {"cpu": 4, "mem": "1Gi"}}
    assert result.resolved_from == 2
    assert [c.path for c in result.conflicts] == ["limits.cpu"]
    assert result.to_dict()["resolved_at"] == "2026-01-02T03:04:05Z"


@pytest.mark.asyncio
async def test_merge_first_strategy_changes_value_not_diagnostics(clock) -> None:
    request = PolicyInputRequest(
        sources=[_inline("a", {"x": 1}), _inline("b", {"x": 2})],
        strategy="merge-first",
        lookup="x",
    )
    result = await resolve_policy_inputs(VariableSourceRegistry(), request, clock=clock)
    assert result.value == 1
    assert len(result.conflicts) == 1


@pytest.mark.asyncio
async def test_requires_sources_and_honours_hard_fail(clock) -> None:
    with pytest.raises(ValidationError, match="sources are required"):
        await resolve_policy_inputs(VariableSourceRegistry(), PolicyInputRequest(), clock=clock)

    request = PolicyInputRequest(
        sources=[_inline("a", {"x": 1}), _inline("b", {"x": 2})], hard_fail=True
    )
    with pytest.raises(VariableConflictError) as excinfo:
        await resolve_policy_inputs(VariableSourceRegistry(), request, clock=clock)
    assert excinfo.value.result.value == {"x": 2}
