from __future__ import annotations

import pytest

from masterchef.services.control.delegation_tokens import (
    TOKEN_PREFIX,
    DelegationStatus,
    DelegationTokenStore,
)
from masterchef.services.control.errors import NotFoundError, ValidationError


def test_issue_normalizes_scopes_and_defaults(clock) -> None:
    store = DelegationTokenStore(clock=clock)
    issued = store.issue(grantor="alice", delegatee="ci-bot", scopes=["Deploy", " deploy", "read", ""])

    assert issued.token.startswith(TOKEN_PREFIX)
    delegation = issued.delegation
    assert delegation.scopes == ["deploy", "read"]
    assert delegation.max_uses == 1
    assert delegation.ttl_seconds == 900
    assert delegation.uses_remaining == 1
    assert "token_hash" not in delegation.to_dict()


def test_issue_bounds(clock) -> None:
    store = DelegationTokenStore(clock=clock)
    base = dict(grantor="a", delegatee="b", scopes=["deploy"])
    with pytest.raises(ValidationError, match="ttl_seconds must be >= 60"):
        store.issue(**base, ttl_seconds=30)
    with pytest.raises(ValidationError, match="ttl_seconds must be <= 86400"):
        store.issue(**base, ttl_seconds=86401)
    with pytest.raises(ValidationError, match="max_uses must be <= 100"):
        store.issue(**base, max_uses=101)
    with pytest.raises(ValidationError, match="at least one scope is required"):
        store.issue(grantor="a", delegatee="b", scopes=[" "])
    with pytest.raises(ValidationError, match="grantor and delegatee are required"):
        store.issue(grantor="", delegatee="b", scopes=["deploy"])


def test_validate_consumes_uses(clock) -> None:
    store = DelegationTokenStore(clock=clock)
    issued = store.issue(grantor="a", delegatee="b", scopes=["deploy"], max_uses=2)

    assert store.validate(issued.token, required_scope="admin").reason == "required scope not granted"
    first = store.validate(issued.token, required_scope="DEPLOY")
    assert first.allowed is True
    assert first.uses_remaining == 1
    assert store.validate(issued.token).uses_remaining == 0

    exhausted = store.validate(issued.token)
    assert exhausted.allowed is False
    assert exhausted.reason == "delegation token exhausted"
    assert store.get(issued.delegation.id).used_count == 2
    assert store.validate("mcdel_x").reason == "delegation token not recognized"


def test_revoke_and_expire(clock) -> None:
    store = DelegationTokenStore(clock=clock)
    one = store.issue(grantor="a", delegatee="b", scopes=["deploy"], max_uses=5)
    two = store.issue(grantor="a", delegatee="c", scopes=["deploy"], ttl_seconds=60)

    assert store.revoke(one.delegation.id).status == DelegationStatus.REVOKED
    assert store.validate(one.token).reason == "delegation token revoked"

    clock.advance(60)
    assert store.validate(two.token).reason == "delegation token expired"
    assert [item.status for item in store.list()] == [DelegationStatus.EXPIRED, DelegationStatus.REVOKED]
    with pytest.raises(NotFoundError, match="delegation token not found"):
        store.revoke("delegation-9")
