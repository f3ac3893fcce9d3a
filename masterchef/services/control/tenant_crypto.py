"""Per-tenant virtual key records and crypto boundary checks."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from masterchef.foundation.common.strings import normalize
from masterchef.foundation.common.timeutils import Clock, utc_now

from .errors import NotFoundError, ValidationError
from .storage import KeyedStore, Record, dataclass_to_dict

logger = logging.getLogger(__name__)

ALGORITHMS = ("aes-256-gcm", "chacha20-poly1305")
KEY_ACTIVE = "active"
KEY_RETIRED = "retired"


@dataclass
class TenantKey(Record):
    tenant: str
    algorithm: str
    version: int = 1
    status: str = KEY_ACTIVE
    fingerprint: str = ""
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class BoundaryDecision:
    allowed: bool
    reason: str
    tenant: str = ""
    key_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return dataclass_to_dict(self)


def _fingerprint(tenant: str, algorithm: str, version: int) -> str:
    return f"{tenant}:{algorithm}:v{version}"


class TenantCryptoStore:
    """Exactly one active key per tenant; rotation retires it and issues the next version.

    Keys are bookkeeping only; no key material is held.
    """

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._lock = threading.RLock()
        self._keys: KeyedStore[TenantKey] = KeyedStore(
            "tenant-key",
            clock=clock,
            lock=self._lock,
            sort_key=lambda key: (key.tenant, key.version),
            reverse=False,
        )
        self._active: dict[str, str] = {}

    def ensure_tenant_key(self, tenant: str, algorithm: str = "") -> TenantKey:
        """Return the tenant's active key, creating version 1 when none exists."""

        tenant = normalize(tenant)
        if not tenant:
            raise ValidationError("tenant is required")
        algorithm = normalize(algorithm) or ALGORITHMS[0]
        if algorithm not in ALGORITHMS:
            raise ValidationError("algorithm must be one of: aes-256-gcm, chacha20-poly1305")
        with self._lock:
            active_id = self._active.get(tenant)
            if active_id:
                existing = self._keys.get(active_id)
                if existing is not None:
                    return existing
            created = self._keys.create(
                TenantKey(
                    tenant=tenant,
                    algorithm=algorithm,
                    fingerprint=_fingerprint(tenant, algorithm, 1),
                )
            )
            self._active[tenant] = created.id
        logger.info("tenant key %s created for %s", created.id, tenant)
        return created

    def rotate(self, tenant: str) -> TenantKey:
        tenant = normalize(tenant)
        if not tenant:
            raise ValidationError("tenant is required")
        with self._lock:
            active_id = self._active.get(tenant)
            if not active_id:
                raise NotFoundError("tenant key not found")
            active = self._keys.get_live(active_id)
            if active is None:
                raise NotFoundError("active tenant key missing")
            now = self._keys.now()
            active.status = KEY_RETIRED
            active.updated_at = now
            version = active.version + 1
            rotated = self._keys.create(
                TenantKey(
                    tenant=tenant,
                    algorithm=active.algorithm,
                    version=version,
                    fingerprint=_fingerprint(tenant, active.algorithm, version),
                ),
                now=now,
            )
            self._active[tenant] = rotated.id
        logger.info("tenant key for %s rotated to v%d (%s)", tenant, version, rotated.id)
        return rotated

    def list(self) -> list[TenantKey]:
        return self._keys.list()

    def boundary_check(
        self,
        *,
        request_tenant: str,
        key_id: str,
        context_tenant: str = "",
        operation: str = "",
    ) -> BoundaryDecision:
        """Decide whether *request_tenant* may use *key_id*.

        Denials are returned, not raised.
        """

        request_tenant = normalize(request_tenant)
        context_tenant = normalize(context_tenant) or request_tenant
        key_id = (key_id or "").strip()
        if not request_tenant or not key_id:
            return BoundaryDecision(allowed=False, reason="request_tenant and key_id are required")
        key = self._keys.get(key_id)
        if key is None:
            return BoundaryDecision(allowed=False, key_id=key_id, reason="tenant key not found")
        if key.tenant != request_tenant:
            reason = "key belongs to a different tenant"
        elif context_tenant != request_tenant:
            reason = "cross-tenant crypto boundary violation"
        elif key.status != KEY_ACTIVE:
            reason = "key is not active"
        else:
            return BoundaryDecision(
                allowed=True,
                tenant=request_tenant,
                key_id=key_id,
                reason="tenant crypto boundary check passed",
            )
        logger.warning(
            "tenant crypto boundary denied %s on %s for %s: %s",
            operation or "operation",
            key_id,
            request_tenant,
            reason,
        )
        return BoundaryDecision(allowed=False, tenant=request_tenant, key_id=key_id, reason=reason)


__all__ = ["ALGORITHMS", "BoundaryDecision", "TenantCryptoStore", "TenantKey"]
