from __future__ import annotations

import pytest

from masterchef.services.control.errors import ConflictError, NotFoundError, ValidationError
from masterchef.services.control.syndic import SyndicRole, SyndicStore


@pytest.fixture
def topology(clock) -> SyndicStore:
    store = SyndicStore(clock=clock)
    store.upsert(name="M", role="master", region="US")
    store.upsert(name="s", role="syndic", parent="m")
    store.upsert(name="leaf", role="minion", parent="s")
    return store


def test_route_walks_from_master_to_target(topology: SyndicStore) -> None:
    route = topology.resolve_route("LEAF")
    assert route.path == ["m", "s", "leaf"]
    assert route.hops == 2
    assert route.to_dict() == {"target": "leaf", "path": ["m", "s", "leaf"], "hops": 2}
    assert topology.resolve_route("m").path == ["m"]


def test_master_with_parent_is_refused(topology: SyndicStore) -> None:
    with pytest.raises(ValidationError, match="parent is not allowed for master role"):
        topology.upsert(name="m", role="master", parent="s")


def test_upsert_cannot_close_a_cycle(topology: SyndicStore) -> None:
    topology.upsert(name="s2", role="syndic", parent="s")
    with pytest.raises(ConflictError, match="cyclic parent topology detected"):
        topology.upsert(name="s", role="syndic", parent="s2")


def test_route_refuses_cycles_introduced_behind_the_store(topology: SyndicStore) -> None:
    topology.upsert(name="s2", role="syndic", parent="s")
    node_id = topology.get("s").id
    topology._nodes.get_live(node_id).parent = "s2"

    with pytest.raises(ConflictError, match="cyclic parent topology detected"):
        topology.resolve_route("s2")


def test_route_reports_broken_links(topology: SyndicStore) -> None:
    topology._nodes.get_live(topology.get("s").id).parent = "ghost"
    with pytest.raises(ConflictError, match="broken parent link in topology"):
        topology.resolve_route("leaf")
    with pytest.raises(NotFoundError, match="target node not found"):
        topology.resolve_route("nobody")


def test_validation_rules(topology: SyndicStore) -> None:
    with pytest.raises(ValidationError, match="name and role are required"):
        topology.upsert(name="", role="minion")
    with pytest.raises(ValidationError, match="role must be master, syndic, or minion"):
        topology.upsert(name="x", role="relay", parent="m")
    with pytest.raises(ValidationError, match="parent is required for non-master roles"):
        topology.upsert(name="x", role="minion")
    with pytest.raises(ValidationError, match="node cannot be its own parent"):
        topology.upsert(name="x", role="syndic", parent="x")
    with pytest.raises(ValidationError, match="parent node not found"):
        topology.upsert(name="x", role="minion", parent="nope")
    with pytest.raises(ValidationError, match="parent role cannot be minion"):
        topology.upsert(name="x", role="minion", parent="leaf")
    with pytest.raises(ConflictError, match="node with children cannot be set to minion role"):
        topology.upsert(name="s", role="minion", parent="m")


def test_upsert_by_name_keeps_identity_and_delete_guards_children(topology: SyndicStore) -> None:
    before = topology.get("leaf")
    after = topology.upsert(name="LEAF", role="minion", parent="m", segment="Edge")
    assert after.id == before.id
    assert after.segment == "edge"
    assert [node.name for node in topology.list()] == ["leaf", "m", "s"]
    assert topology.get("m").role is SyndicRole.MASTER
    assert topology.get("m").region == "us"

    with pytest.raises(ConflictError, match="node with children cannot be deleted"):
        topology.delete("m")
    assert topology.delete("s") is True
    assert topology.delete("s") is False
