"""Heartbeat leases that let an executor claim a run and lose it when it goes quiet."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from masterchef.foundation.common.ids import id_sequence
from masterchef.foundation.common.timeutils import Clock, utc_now

from .errors import ConflictError, NotFoundError, ValidationError
from .storage import ExpiryRule, KeyedStore, Record, sweep_expired

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TTL_SECONDS = 30


class LeaseStatus(StrEnum):
    ACTIVE = "active"
    RELEASED = "released"
    RECOVERED = "recovered"


_LEASE_RECOVERY = ExpiryRule(
    expirable=frozenset({LeaseStatus.ACTIVE}), terminal=LeaseStatus.RECOVERED
)


@dataclass
class RunLease(Record):
    job_id: str
    holder: str
    ttl_seconds: int
    last_heartbeat: datetime
    expires_at: datetime
    status: LeaseStatus = LeaseStatus.ACTIVE
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    recovered_at: datetime | None = None


class RunLeaseStore:
    """One lease per job id.

    Lapsed leases move to ``recovered`` before any read or mutation;
    :meth:`recover_expired` sweeps explicitly and returns what it moved.
    """

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._leases: KeyedStore[RunLease] = KeyedStore("lease", clock=clock)

    def acquire(self, *, job_id: str, holder: str, ttl_seconds: int = 0) -> RunLease:
        """Claim *job_id*; an existing lease for the job is refreshed in place."""

        job_id = (job_id or "").strip()
        holder = (holder or "").strip()
        if not job_id or not holder:
            raise ValidationError("job_id and holder are required")
        ttl = ttl_seconds if ttl_seconds > 0 else DEFAULT_LEASE_TTL_SECONDS
        with self._leases.lock:
            now = self._clock()
            self._recover_locked(now)
            existing = self._by_job_locked(job_id)
            if existing is not None:

                def _refresh(lease: RunLease) -> None:
                    lease.holder = holder
                    lease.ttl_seconds = ttl
                    lease.last_heartbeat = now
                    lease.expires_at = now + timedelta(seconds=ttl)
                    lease.status = LeaseStatus.ACTIVE
                    lease.recovered_at = None

                return self._leases.mutate(existing.id, _refresh, now=now)
            lease = self._leases.create(
                RunLease(
                    job_id=job_id,
                    holder=holder,
                    ttl_seconds=ttl,
                    last_heartbeat=now,
                    expires_at=now + timedelta(seconds=ttl),
                ),
                now=now,
            )
        logger.debug("lease %s acquired by %s for job %s", lease.id, holder, job_id)
        return lease

    def heartbeat(self, *, lease_id: str = "", job_id: str = "") -> RunLease:
        def _beat(lease: RunLease) -> None:
            if lease.status != LeaseStatus.ACTIVE:
                raise ConflictError("lease is not active")
            lease.last_heartbeat = now
            lease.expires_at = now + timedelta(seconds=lease.ttl_seconds)

        with self._leases.lock:
            now = self._clock()
            self._recover_locked(now)
            lease = self._resolve_locked(lease_id, job_id)
            return self._leases.mutate(lease.id, _beat, now=now)

    def release(self, *, lease_id: str = "", job_id: str = "") -> RunLease:
        """End an active lease; a lease that already ended is returned unchanged."""

        def _release(lease: RunLease) -> None:
            lease.status = LeaseStatus.RELEASED
            lease.expires_at = now

        with self._leases.lock:
            now = self._clock()
            self._recover_locked(now)
            lease = self._resolve_locked(lease_id, job_id)
            if lease.status != LeaseStatus.ACTIVE:
                return lease.clone()
            released = self._leases.mutate(lease.id, _release, now=now)
        logger.debug("lease %s released", released.id)
        return released

    def list(self, include_recovered: bool = False) -> list[RunLease]:
        with self._leases.lock:
            self._recover_locked(self._clock())
            if include_recovered:
                return self._leases.list()
            return self._leases.list(lambda lease: lease.status != LeaseStatus.RECOVERED)

    def recover_expired(self, now: datetime | None = None) -> list[RunLease]:
        """Move every lapsed active lease to ``recovered`` and return them by id."""

        with self._leases.lock:
            recovered = self._recover_locked(now or self._clock())
            result = [lease.clone() for lease in recovered]
        result.sort(key=lambda lease: id_sequence(lease.id))
        return result

    def _recover_locked(self, now: datetime) -> list[RunLease]:
        recovered = sweep_expired(self._leases.live(), now, _LEASE_RECOVERY)
        for lease in recovered:
            lease.recovered_at = now
            logger.warning("lease %s for job %s recovered after missed heartbeats", lease.id, lease.job_id)
        return recovered

    def _by_job_locked(self, job_id: str) -> RunLease | None:
        for lease in self._leases.live():
            if lease.job_id == job_id:
                return lease
        return None

    def _resolve_locked(self, lease_id: str, job_id: str) -> RunLease:
        lease_id = (lease_id or "").strip()
        job_id = (job_id or "").strip()
        if not lease_id and not job_id:
            raise ValidationError("lease_id or job_id is required")
        lease = self._leases.get_live(lease_id) if lease_id else self._by_job_locked(job_id)
        if lease is None:
            raise NotFoundError("lease not found")
        return lease


__all__ = ["LeaseStatus", "RunLease", "RunLeaseStore"]
