from __future__ import annotations

from datetime import timedelta

import pytest

from masterchef.services.control.errors import ConflictError, ValidationError
from masterchef.services.control.execution_locks import ExecutionLockStore, LockStatus


def test_one_active_lock_per_key(clock) -> None:
    store = ExecutionLockStore(clock=clock)
    lock = store.acquire("Env/Prod", "deployer")
    assert lock.key == "env/prod"
    assert lock.id == "exec-lock-1"
    assert lock.expires_at == clock.now + timedelta(seconds=600)

    with pytest.raises(ConflictError, match="execution lock already held for key"):
        store.acquire("env/prod")
    with pytest.raises(ValidationError, match="key is required"):
        store.acquire(" ")
    assert store.acquire("env/dev").holder == "control-plane"


def test_expired_lock_is_replaced_on_acquire(clock) -> None:
    store = ExecutionLockStore(clock=clock)
    first = store.acquire("site", ttl_seconds=60)
    clock.advance(60)
    second = store.acquire("site")

    assert second.id != first.id
    history = store.list(include_history=True)
    assert [item.id for item in history] == [second.id, first.id]
    assert history[1].status == LockStatus.EXPIRED
    assert history[1].released_at == clock.now


def test_bind_job_and_release_by_job(clock) -> None:
    store = ExecutionLockStore(clock=clock)
    store.acquire("site", ttl_seconds=60)
    bound = store.bind_job("SITE", "job-7")
    assert bound.job_id == "job-7"

    clock.advance(5)
    released = store.release(job_id="job-7")
    assert released.status == LockStatus.RELEASED
    assert released.released_at == clock.now
    assert store.release(job_id="job-7") is None
    assert store.release(key="missing") is None
    assert store.list() == []

    with pytest.raises(ConflictError, match="execution lock not active"):
        store.bind_job("site", "job-8")
    store.acquire("site", ttl_seconds=60)
    clock.advance(60)
    with pytest.raises(ConflictError, match="execution lock expired"):
        store.bind_job("site", "job-8")


def test_cleanup_and_bounded_history(clock) -> None:
    store = ExecutionLockStore(history_limit=2, clock=clock)
    for key in ("c", "a", "b"):
        store.acquire(key, ttl_seconds=60)
    store.acquire("d", ttl_seconds=600)

    clock.advance(60)
    expired = store.cleanup_expired()
    assert [item.key for item in expired] == ["a", "b", "c"]
    assert all(item.status == LockStatus.EXPIRED for item in expired)

    everything = store.list(include_history=True)
    assert [item.key for item in everything[:1]] == ["d"]
    assert len(everything) == 3


def test_reads_and_release_see_lapsed_locks_as_expired(clock) -> None:
    store = ExecutionLockStore(clock=clock)
    lock = store.acquire("site", ttl_seconds=60)
    store.bind_job("site", "job-1")

    clock.advance(120)
    assert store.list() == []
    history = store.list(include_history=True)
    assert [(item.id, item.status) for item in history] == [(lock.id, LockStatus.EXPIRED)]

    assert store.release(job_id="job-1") is None
    assert store.release(key="site") is None


def test_release_returns_lock_that_lapsed_before_the_call(clock) -> None:
    store = ExecutionLockStore(clock=clock)
    lock = store.acquire("site", ttl_seconds=60)

    clock.advance(120)
    released = store.release(key="site")
    assert released.id == lock.id
    assert released.status == LockStatus.EXPIRED
    assert released.released_at == clock.now
