"""Scoped, use-limited delegation tokens for pipelines acting on a grantor's behalf."""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Iterable

from masterchef.foundation.common.hashutils import sha256_hex
from masterchef.foundation.common.strings import normalize_string_list
from masterchef.foundation.common.timeutils import Clock, utc_now

from .errors import ValidationError
from .storage import ExpiryRule, KeyedStore, Record, sweep_expired

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "mcdel_"
DEFAULT_DELEGATION_TTL_SECONDS = 900
MIN_DELEGATION_TTL_SECONDS = 60
MAX_DELEGATION_TTL_SECONDS = 86400
MAX_DELEGATION_USES = 100


class DelegationStatus(StrEnum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


_DELEGATION_EXPIRY = ExpiryRule(
    expirable=frozenset({DelegationStatus.ACTIVE}), terminal=DelegationStatus.EXPIRED
)


@dataclass
class DelegationToken(Record):
    grantor: str
    delegatee: str
    scopes: list[str]
    ttl_seconds: int
    max_uses: int
    expires_at: datetime
    pipeline_id: str = ""
    used_count: int = 0
    status: DelegationStatus = DelegationStatus.ACTIVE
    token_hash: str = field(default="", repr=False)
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    revoked_at: datetime | None = None

    @property
    def uses_remaining(self) -> int:
        return max(self.max_uses - self.used_count, 0)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.pop("token_hash", None)
        return payload


@dataclass
class IssuedDelegation:
    token: str
    delegation: DelegationToken

    def to_dict(self) -> dict[str, Any]:
        return {"token": self.token, "delegation": self.delegation.to_dict()}


@dataclass
class DelegationValidation(Record):
    allowed: bool
    reason: str = ""
    delegation_id: str = ""
    grantor: str = ""
    delegatee: str = ""
    expires_at: datetime | None = None
    uses_remaining: int = 0

    @classmethod
    def from_token(cls, item: DelegationToken, allowed: bool, reason: str = "") -> "DelegationValidation":
        return cls(
            allowed=allowed,
            reason=reason,
            delegation_id=item.id,
            grantor=item.grantor,
            delegatee=item.delegatee,
            expires_at=item.expires_at,
            uses_remaining=item.uses_remaining,
        )


class DelegationTokenStore:
    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._tokens: KeyedStore[DelegationToken] = KeyedStore(
            "delegation", clock=clock, lock=self._lock
        )

    def issue(
        self,
        *,
        grantor: str,
        delegatee: str,
        scopes: Iterable[str],
        pipeline_id: str = "",
        ttl_seconds: int = 0,
        max_uses: int = 0,
    ) -> IssuedDelegation:
        grantor = (grantor or "").strip()
        delegatee = (delegatee or "").strip()
        if not grantor or not delegatee:
            raise ValidationError("grantor and delegatee are required")
        ttl = ttl_seconds if ttl_seconds > 0 else DEFAULT_DELEGATION_TTL_SECONDS
        if ttl < MIN_DELEGATION_TTL_SECONDS:
            raise ValidationError(f"ttl_seconds must be >= {MIN_DELEGATION_TTL_SECONDS}")
        if ttl > MAX_DELEGATION_TTL_SECONDS:
            raise ValidationError(f"ttl_seconds must be <= {MAX_DELEGATION_TTL_SECONDS}")
        uses = max_uses if max_uses > 0 else 1
        if uses > MAX_DELEGATION_USES:
            raise ValidationError(f"max_uses must be <= {MAX_DELEGATION_USES}")
        normalized_scopes = normalize_string_list(scopes)
        if not normalized_scopes:
            raise ValidationError("at least one scope is required")
        token = TOKEN_PREFIX + secrets.token_hex(32)
        now = self._clock()
        created = self._tokens.create(
            DelegationToken(
                grantor=grantor,
                delegatee=delegatee,
                scopes=normalized_scopes,
                ttl_seconds=ttl,
                max_uses=uses,
                expires_at=now + timedelta(seconds=ttl),
                pipeline_id=(pipeline_id or "").strip(),
                token_hash=sha256_hex(token),
            ),
            now=now,
        )
        logger.info("delegation %s issued by %s to %s", created.id, grantor, delegatee)
        return IssuedDelegation(token=token, delegation=created)

    def list(self) -> list[DelegationToken]:
        with self._lock:
            self._sweep(self._clock())
            return self._tokens.list()

    def get(self, delegation_id: str) -> DelegationToken | None:
        with self._lock:
            self._sweep(self._clock())
            return self._tokens.get(delegation_id)

    def revoke(self, delegation_id: str) -> DelegationToken:
        delegation_id = (delegation_id or "").strip()
        if not delegation_id:
            raise ValidationError("delegation token id is required")

        def _revoke(item: DelegationToken) -> None:
            if item.status is DelegationStatus.ACTIVE:
                item.status = DelegationStatus.REVOKED
                item.revoked_at = now

        with self._lock:
            now = self._clock()
            self._sweep(now)
            return self._tokens.mutate(
                delegation_id, _revoke, missing="delegation token not found", now=now
            )

    def validate(self, token: str, *, required_scope: str = "") -> DelegationValidation:
        """Check *token* and consume one use when it is allowed."""

        token = (token or "").strip()
        if not token:
            return DelegationValidation(allowed=False, reason="token is required")
        digest = sha256_hex(token)
        scope = (required_scope or "").strip().lower()
        with self._lock:
            now = self._clock()
            self._sweep(now)
            item = next((t for t in self._tokens.live() if t.token_hash == digest), None)
            if item is None:
                return DelegationValidation(allowed=False, reason="delegation token not recognized")
            if item.status is DelegationStatus.REVOKED:
                return DelegationValidation.from_token(item, False, "delegation token revoked")
            if item.status is DelegationStatus.EXPIRED:
                return DelegationValidation.from_token(item, False, "delegation token expired")
            if scope and scope not in item.scopes:
                return DelegationValidation.from_token(item, False, "required scope not granted")
            if item.used_count >= item.max_uses:
                return DelegationValidation.from_token(item, False, "delegation token exhausted")
            item.used_count += 1
            item.updated_at = now
            return DelegationValidation.from_token(item, True)

    def _sweep(self, now: datetime) -> None:
        for item in sweep_expired(self._tokens.live(), now, _DELEGATION_EXPIRY):
            item.revoked_at = item.expires_at
            logger.debug("delegation %s expired", item.id)


__all__ = [
    "DelegationStatus",
    "DelegationToken",
    "DelegationTokenStore",
    "DelegationValidation",
    "IssuedDelegation",
    "TOKEN_PREFIX",
]
