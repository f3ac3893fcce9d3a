"""Just-in-time access grants backed by opaque bearer tokens."""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from masterchef.foundation.common.hashutils import sha256_hex
from masterchef.foundation.common.timeutils import Clock, utc_now

from .errors import ValidationError
from .storage import ExpiryRule, KeyedStore, Record, sweep_expired

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "mcjit_"
DEFAULT_GRANT_TTL_SECONDS = 900
MIN_GRANT_TTL_SECONDS = 60
MAX_GRANT_TTL_SECONDS = 3600


class GrantStatus(StrEnum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


_GRANT_EXPIRY = ExpiryRule(expirable=frozenset({GrantStatus.ACTIVE}), terminal=GrantStatus.EXPIRED)


@dataclass
class JITAccessGrant(Record):
    subject: str
    resource: str
    action: str
    issued_by: str
    reason: str
    ttl_seconds: int
    expires_at: datetime
    break_glass_request_id: str = ""
    status: GrantStatus = GrantStatus.ACTIVE
    token_hash: str = ""
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    revoked_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.pop("token_hash", None)
        return payload


@dataclass
class IssuedGrant:
    grant: JITAccessGrant
    token: str

    def to_dict(self) -> dict[str, Any]:
        return {"grant": self.grant.to_dict(), "token": self.token}


@dataclass
class GrantValidation(Record):
    allowed: bool
    reason: str = ""
    grant_id: str = ""
    subject: str = ""
    resource: str = ""
    action: str = ""
    expires_at: datetime | None = None

    @classmethod
    def from_grant(cls, grant: JITAccessGrant, allowed: bool, reason: str = "") -> "GrantValidation":
        return cls(
            allowed=allowed,
            reason=reason,
            grant_id=grant.id,
            subject=grant.subject,
            resource=grant.resource,
            action=grant.action,
            expires_at=grant.expires_at,
        )


def hash_token(token: str) -> str:
    return sha256_hex(token)


class JITAccessGrantStore:
    """Grants are looked up by the SHA-256 of their token; plaintext is returned once."""

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._grants: KeyedStore[JITAccessGrant] = KeyedStore("jit-grant", clock=clock, lock=self._lock)

    def issue(
        self,
        *,
        subject: str,
        resource: str,
        action: str,
        issued_by: str,
        reason: str,
        ttl_seconds: int = 0,
        break_glass_request_id: str = "",
    ) -> IssuedGrant:
        values = [(item or "").strip() for item in (subject, resource, action, issued_by, reason)]
        if not all(values):
            raise ValidationError("subject, resource, action, issued_by, and reason are required")
        subject, resource, action, issued_by, reason = values
        ttl = ttl_seconds if ttl_seconds > 0 else DEFAULT_GRANT_TTL_SECONDS
        if ttl < MIN_GRANT_TTL_SECONDS:
            raise ValidationError(f"ttl_seconds must be >= {MIN_GRANT_TTL_SECONDS}")
        if ttl > MAX_GRANT_TTL_SECONDS:
            raise ValidationError(f"ttl_seconds must be <= {MAX_GRANT_TTL_SECONDS}")
        token = TOKEN_PREFIX + secrets.token_hex(32)
        now = self._clock()
        grant = self._grants.create(
            JITAccessGrant(
                subject=subject,
                resource=resource,
                action=action,
                issued_by=issued_by,
                reason=reason,
                ttl_seconds=ttl,
                expires_at=now + timedelta(seconds=ttl),
                break_glass_request_id=(break_glass_request_id or "").strip(),
                token_hash=hash_token(token),
            ),
            now=now,
        )
        logger.info("jit grant %s issued to %s for %s:%s", grant.id, subject, resource, action)
        return IssuedGrant(grant=grant, token=token)

    def list(self) -> list[JITAccessGrant]:
        with self._lock:
            self._sweep(self._clock())
            return self._grants.list()

    def get(self, grant_id: str) -> JITAccessGrant | None:
        with self._lock:
            self._sweep(self._clock())
            return self._grants.get(grant_id)

    def revoke(self, grant_id: str) -> JITAccessGrant:
        """Revoke a grant; revoking an already ended grant is a no-op."""

        grant_id = (grant_id or "").strip()
        if not grant_id:
            raise ValidationError("grant id is required")

        def _revoke(grant: JITAccessGrant) -> None:
            if grant.status is GrantStatus.ACTIVE:
                grant.status = GrantStatus.REVOKED
                grant.revoked_at = now

        with self._lock:
            now = self._clock()
            self._sweep(now)
            return self._grants.mutate(grant_id, _revoke, missing="jit access grant not found", now=now)

    def validate(self, token: str, *, resource: str = "", action: str = "") -> GrantValidation:
        token = (token or "").strip()
        if not token:
            return GrantValidation(allowed=False, reason="token is required")
        digest = hash_token(token)
        with self._lock:
            self._sweep(self._clock())
            grant = self._grants.find(lambda item: item.token_hash == digest)
        if grant is None:
            return GrantValidation(allowed=False, reason="jit access grant token not recognized")
        if grant.status is GrantStatus.REVOKED:
            return GrantValidation.from_grant(grant, False, "jit access grant revoked")
        if grant.status is GrantStatus.EXPIRED:
            return GrantValidation.from_grant(grant, False, "jit access grant expired")
        resource = (resource or "").strip()
        if resource and resource != grant.resource:
            return GrantValidation.from_grant(grant, False, "jit access grant resource mismatch")
        action = (action or "").strip()
        if action and action != grant.action:
            return GrantValidation.from_grant(grant, False, "jit access grant action mismatch")
        return GrantValidation.from_grant(grant, True)

    def _sweep(self, now: datetime) -> None:
        for grant in sweep_expired(self._grants.live(), now, _GRANT_EXPIRY):
            grant.revoked_at = grant.expires_at
            logger.debug("jit grant %s expired", grant.id)


__all__ = [
    "GrantStatus",
    "GrantValidation",
    "IssuedGrant",
    "JITAccessGrant",
    "JITAccessGrantStore",
    "TOKEN_PREFIX",
    "hash_token",
]
