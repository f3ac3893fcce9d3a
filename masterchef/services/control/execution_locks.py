"""Mutual-exclusion locks keyed by execution target, with release history."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from masterchef.foundation.common.ids import IDAllocator
from masterchef.foundation.common.strings import normalize
from masterchef.foundation.common.timeutils import Clock, utc_now

from .errors import ConflictError, ValidationError
from .storage import BoundedRing, ExpiryRule, Record

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 600
DEFAULT_LOCK_HISTORY = 2000
DEFAULT_HOLDER = "control-plane"


class LockStatus(StrEnum):
    ACTIVE = "active"
    RELEASED = "released"
    EXPIRED = "expired"


_LOCK_EXPIRY = ExpiryRule(expirable=frozenset({LockStatus.ACTIVE}), terminal=LockStatus.EXPIRED)


@dataclass
class ExecutionLock(Record):
    id: str
    key: str
    holder: str
    acquired_at: datetime
    expires_at: datetime
    status: LockStatus = LockStatus.ACTIVE
    job_id: str = ""
    released_at: datetime | None = None


class ExecutionLockStore:
    """At most one active lock per lowercased key.

    Released and expired locks leave the active table and are kept in a
    bounded history, newest release first.
    """

    def __init__(self, *, history_limit: int = DEFAULT_LOCK_HISTORY, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._ids = IDAllocator("exec-lock")
        self._by_key: dict[str, ExecutionLock] = {}
        self._by_job: dict[str, str] = {}
        self._history: BoundedRing[ExecutionLock] = BoundedRing(
            history_limit if history_limit > 0 else DEFAULT_LOCK_HISTORY
        )

    def acquire(self, key: str, holder: str = "", ttl_seconds: int = 0) -> ExecutionLock:
        key = normalize(key)
        if not key:
            raise ValidationError("key is required")
        holder = (holder or "").strip() or DEFAULT_HOLDER
        ttl = ttl_seconds if ttl_seconds > 0 else DEFAULT_LOCK_TTL_SECONDS
        with self._lock:
            now = self._clock()
            self._expire_locked(now)
            if key in self._by_key:
                raise ConflictError("execution lock already held for key")
            item = ExecutionLock(
                id=self._ids.next(),
                key=key,
                holder=holder,
                acquired_at=now,
                expires_at=now + timedelta(seconds=ttl),
            )
            self._by_key[key] = item
            logger.debug("execution lock %s acquired on %s by %s", item.id, key, holder)
            return item.clone()

    def bind_job(self, key: str, job_id: str) -> ExecutionLock:
        key = normalize(key)
        job_id = (job_id or "").strip()
        if not key or not job_id:
            raise ValidationError("key and job_id are required")
        with self._lock:
            now = self._clock()
            current = self._by_key.get(key)
            lapsed = current is not None and _LOCK_EXPIRY.is_due(current, now)
            self._expire_locked(now)
            if lapsed:
                raise ConflictError("execution lock expired")
            item = self._by_key.get(key)
            if item is None or item.status != LockStatus.ACTIVE:
                raise ConflictError("execution lock not active")
            item.job_id = job_id
            self._by_job[job_id] = key
            return item.clone()

    def release(self, *, key: str = "", job_id: str = "") -> ExecutionLock | None:
        """Release by key, or by the job bound to it; ``None`` when nothing matches.

        A lock that lapsed before the call is returned as ``expired``.
        """

        key = normalize(key)
        job_id = (job_id or "").strip()
        with self._lock:
            if not key and job_id:
                key = self._by_job.get(job_id, "")
            if not key:
                return None
            now = self._clock()
            lapsed = next((item for item in self._expire_locked(now) if item.key == key), None)
            if lapsed is not None:
                return lapsed
            item = self._by_key.get(key)
            if item is None:
                return None
            released = self._retire_locked(item, LockStatus.RELEASED, now)
        logger.debug("execution lock %s on %s released", released.id, released.key)
        return released

    def cleanup_expired(self) -> list[ExecutionLock]:
        with self._lock:
            return self._expire_locked(self._clock())

    def list(self, include_history: bool = False) -> list[ExecutionLock]:
        """Active locks by key, followed by history when requested."""

        with self._lock:
            self._expire_locked(self._clock())
            active = [item.clone() for item in self._by_key.values()]
            history = [item.clone() for item in self._history] if include_history else []
        active.sort(key=lambda item: item.key)
        history.sort(key=lambda item: item.released_at, reverse=True)
        return active + history

    def _expire_locked(self, now: datetime) -> list[ExecutionLock]:
        """Retire every lapsed lock into history; returns them by key."""

        due = [item for item in self._by_key.values() if _LOCK_EXPIRY.is_due(item, now)]
        expired = [self._retire_locked(item, LockStatus.EXPIRED, now) for item in due]
        expired.sort(key=lambda item: item.key)
        return expired

    def _retire_locked(self, item: ExecutionLock, status: str, now: datetime) -> ExecutionLock:
        item.status = LockStatus(status)
        item.released_at = now
        if item.job_id:
            self._by_job.pop(item.job_id, None)
        self._by_key.pop(item.key, None)
        retired = item.clone()
        self._history.append(retired)
        return retired.clone()


__all__ = ["ExecutionLock", "ExecutionLockStore", "LockStatus"]
