from __future__ import annotations

from datetime import timedelta

import pytest

from masterchef.services.control.errors import NotFoundError, ValidationError
from masterchef.services.control.jit_grants import (
    TOKEN_PREFIX,
    GrantStatus,
    JITAccessGrantStore,
    hash_token,
)


def _issue(store: JITAccessGrantStore, **overrides):
    params = dict(
        subject="alice",
        resource="db/prod",
        action="read",
        issued_by="oncall",
        reason="incident 42",
    )
    params.update(overrides)
    return store.issue(**params)


def test_issue_returns_plaintext_once(clock) -> None:
    store = JITAccessGrantStore(clock=clock)
    issued = _issue(store)

    assert issued.token.startswith(TOKEN_PREFIX)
    assert len(issued.token) == len(TOKEN_PREFIX) + 64
    grant = issued.grant
    assert grant.ttl_seconds == 900
    assert grant.expires_at == clock.now + timedelta(seconds=900)
    assert grant.token_hash == hash_token(issued.token)
    assert "token_hash" not in grant.to_dict()
    assert issued.to_dict()["token"] == issued.token


def test_ttl_bounds_and_required_fields(clock) -> None:
    store = JITAccessGrantStore(clock=clock)
    with pytest.raises(ValidationError, match="ttl_seconds must be >= 60"):
        _issue(store, ttl_seconds=59)
    with pytest.raises(ValidationError, match="ttl_seconds must be <= 3600"):
        _issue(store, ttl_seconds=3601)
    with pytest.raises(ValidationError, match="are required"):
        _issue(store, reason=" ")
    assert _issue(store, ttl_seconds=60).grant.ttl_seconds == 60


def test_validate_checks_scope_of_grant(clock) -> None:
    store = JITAccessGrantStore(clock=clock)
    issued = _issue(store)

    ok = store.validate(issued.token, resource="db/prod", action="read")
    assert ok.allowed is True
    assert ok.grant_id == issued.grant.id
    assert store.validate(issued.token).allowed is True

    assert store.validate(issued.token, resource="db/dev").reason == "jit access grant resource mismatch"
    assert store.validate(issued.token, action="write").reason == "jit access grant action mismatch"
    assert store.validate("mcjit_nope").reason == "jit access grant token not recognized"
    assert store.validate("").reason == "token is required"


def test_revoke_and_expiry(clock) -> None:
    store = JITAccessGrantStore(clock=clock)
    revoked = _issue(store)
    expiring = _issue(store, ttl_seconds=60)

    clock.advance(1)
    result = store.revoke(revoked.grant.id)
    assert result.status == GrantStatus.REVOKED
    assert result.revoked_at == clock.now
    assert store.validate(revoked.token).reason == "jit access grant revoked"

    clock.advance(59)
    assert store.validate(expiring.token).reason == "jit access grant expired"
    expired = store.get(expiring.grant.id)
    assert expired.status == GrantStatus.EXPIRED
    assert expired.revoked_at == expired.expires_at

    assert store.revoke(expiring.grant.id).status == GrantStatus.EXPIRED
    with pytest.raises(NotFoundError, match="jit access grant not found"):
        store.revoke("jit-grant-99")
