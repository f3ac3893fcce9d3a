from __future__ import annotations

import pytest

from masterchef.services.control.errors import ValidationError
from masterchef.services.control.merge import (
    Layer,
    MergeStrategy,
    PillarResolveRequest,
    lookup_path,
    merge_layers,
    normalize_strategy,
    resolve_pillar,
)


def test_merge_last_with_lookup() -> None:
    result = resolve_pillar(
        PillarResolveRequest(
            strategy="merge-last",
            layers=[
                Layer("base", {"service": {"replicas": 2}, "region": "us-east-1"}),
                Layer("prod", {"service": {"replicas": 5}}),
            ],
            lookup="service.replicas",
        )
    )

    assert result.found is True
    assert result.value == 5
    assert result.merged["region"] == "us-east-1"
    assert result.layers == ["base", "prod"]
    assert result.to_dict()["strategy"] == "merge-last"


def test_merge_first_keeps_earliest_leaf() -> None:
    merged, _ = merge_layers(
        [
            {"name": "a", "data": {"svc": {"port": 80}}},
            {"name": "b", "data": {"svc": {"port": 8080, "tls": True}, "extra": 1}},
        ],
        MergeStrategy.MERGE_FIRST,
    )
    assert merged == {"svc": {"port": 80, "tls": True}, "extra": 1}


def test_overwrite_replaces_whole_subtrees() -> None:
    merged, _ = merge_layers(
        [Layer("a", {"svc": {"port": 80, "tls": True}}), Layer("b", {"svc": {"port": 81}})],
        MergeStrategy.OVERWRITE,
    )
    assert merged == {"svc": {"port": 81}}


def test_remove_drops_keys_set_to_none() -> None:
    merged, _ = merge_layers(
        [
            Layer("a", {"svc": {"port": 80, "debug": True}, "legacy": "x"}),
            Layer("b", {"svc": {"debug": None}, "legacy": None}),
        ],
        MergeStrategy.REMOVE,
    )
    assert merged == {"svc": {"port": 80}}


def test_layers_are_not_mutated_by_merge() -> None:
    base = Layer("a", {"svc": {"port": 80}})
    merged, _ = merge_layers([base, Layer("b", {"svc": {"tls": True}})], MergeStrategy.MERGE_LAST)
    merged["svc"]["port"] = 1
    assert base.data == {"svc": {"port": 80}}


def test_lookup_misses_fall_back_to_default() -> None:
    result = resolve_pillar(
        PillarResolveRequest(layers=[Layer("a", {"x": {"y": 1}})], lookup="x.z", default="none")
    )
    assert result.found is False
    assert result.value == "none"
    assert lookup_path({"x": 1}, "x..y") == (None, False)
    assert lookup_path({"x": {"y": None}}, "x.y") == (None, True)


def test_unknown_strategy_rejected() -> None:
    assert normalize_strategy(" Merge-First ") is MergeStrategy.MERGE_FIRST
    with pytest.raises(ValidationError, match="strategy must be one of"):
        normalize_strategy("deep")
    with pytest.raises(ValidationError, match="layer data must be a mapping"):
        merge_layers([{"name": "a", "data": [1]}], MergeStrategy.MERGE_LAST)
