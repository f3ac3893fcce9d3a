"""Quorum approval policies and the break-glass request workflow."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Iterable, Mapping

from masterchef.foundation.common.timeutils import Clock, utc_now

from . import metrics as control_metrics
from .errors import ConflictError, NotFoundError, ValidationError
from .storage import ExpiryRule, KeyedStore, Record, sweep_expired

logger = logging.getLogger(__name__)

DEFAULT_BREAKGLASS_TTL_SECONDS = 3600
MIN_BREAKGLASS_TTL_SECONDS = 300
MAX_BREAKGLASS_TTL_SECONDS = 86400


class BreakGlassStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    REJECTED = "rejected"
    REVOKED = "revoked"
    EXPIRED = "expired"


class ApprovalDecision(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"
    REVOKE = "revoke"


_BREAKGLASS_EXPIRY = ExpiryRule(
    expirable=frozenset({BreakGlassStatus.ACTIVE}),
    terminal=BreakGlassStatus.EXPIRED,
)


@dataclass
class ApprovalStage:
    name: str
    required_approvals: int = 1


@dataclass
class ApprovalPolicy(Record):
    name: str
    stages: list[ApprovalStage] = field(default_factory=list)
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ApprovalRecord:
    actor: str
    decision: ApprovalDecision
    stage_index: int
    stage_name: str
    created_at: datetime
    comment: str = ""


@dataclass
class BreakGlassRequest(Record):
    """A time-bound elevated-access request gated by staged approvals.

    ``stages`` is a snapshot of the policy taken at creation time; later
    policy edits never reach requests already in flight.
    """

    requested_by: str
    reason: str
    scope: str
    policy_id: str
    policy_name: str
    stages: list[ApprovalStage] = field(default_factory=list)
    current_stage: int = 0
    status: BreakGlassStatus = BreakGlassStatus.PENDING
    approvals: list[ApprovalRecord] = field(default_factory=list)
    ttl_seconds: int = DEFAULT_BREAKGLASS_TTL_SECONDS
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    activated_at: datetime | None = None
    expires_at: datetime | None = None
    rejected_at: datetime | None = None
    revoked_at: datetime | None = None
    rejection_reason: str = ""

    def approvals_at(self, stage_index: int) -> int:
        return sum(
            1
            for item in self.approvals
            if item.stage_index == stage_index and item.decision == ApprovalDecision.APPROVE
        )

    def stage_name_or(self, fallback: str) -> str:
        if 0 <= self.current_stage < len(self.stages):
            return self.stages[self.current_stage].name
        return fallback


def normalize_stages(stages: Iterable[ApprovalStage | Mapping[str, Any]] | None) -> list[ApprovalStage]:
    """Validate stage rules, naming blanks ``stage-<n>`` and clamping quorums to 1."""

    raw = list(stages or [])
    if not raw:
        raise ValidationError("at least one approval stage is required")
    result: list[ApprovalStage] = []
    for position, stage in enumerate(raw, start=1):
        if isinstance(stage, Mapping):
            name = stage.get("name")
            required = stage.get("required_approvals")
        else:
            name = stage.name
            required = stage.required_approvals
        name = str(name or "").strip() or f"stage-{position}"
        try:
            required_count = int(required or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError("required_approvals must be an integer") from exc
        result.append(ApprovalStage(name=name, required_approvals=max(required_count, 1)))
    return result


def _record_approval(request: BreakGlassRequest, actor: str, comment: str, now: datetime) -> None:
    if request.status != BreakGlassStatus.PENDING:
        raise ConflictError("break-glass request is not pending approval")
    if not 0 <= request.current_stage < len(request.stages):
        raise ConflictError("break-glass stage index out of range")
    stage = request.stages[request.current_stage]
    folded = actor.casefold()
    for existing in request.approvals:
        if existing.stage_index == request.current_stage and existing.actor.casefold() == folded:
            raise ConflictError("actor has already approved current stage")
    request.approvals.append(
        ApprovalRecord(
            actor=actor,
            decision=ApprovalDecision.APPROVE,
            comment=comment.strip(),
            stage_index=request.current_stage,
            stage_name=stage.name,
            created_at=now,
        )
    )
    if request.approvals_at(request.current_stage) < stage.required_approvals:
        return
    request.current_stage += 1
    if request.current_stage >= len(request.stages):
        request.status = BreakGlassStatus.ACTIVE
        request.activated_at = now
        request.expires_at = now + timedelta(seconds=request.ttl_seconds)


class AccessApprovalStore:
    """Approval policies and the break-glass requests evaluated against them."""

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._policies: KeyedStore[ApprovalPolicy] = KeyedStore(
            "approval-policy", clock=clock, lock=self._lock
        )
        self._requests: KeyedStore[BreakGlassRequest] = KeyedStore(
            "breakglass", clock=clock, lock=self._lock
        )

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------
    def create_policy(
        self, name: str, stages: Iterable[ApprovalStage | Mapping[str, Any]]
    ) -> ApprovalPolicy:
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required")
        policy = ApprovalPolicy(name=name, stages=normalize_stages(stages))
        return self._policies.create(policy)

    def list_policies(self) -> list[ApprovalPolicy]:
        return self._policies.list()

    def get_policy(self, policy_id: str) -> ApprovalPolicy | None:
        return self._policies.get(policy_id)

    # ------------------------------------------------------------------
    # Break-glass requests
    # ------------------------------------------------------------------
    def create_break_glass_request(
        self,
        *,
        requested_by: str,
        reason: str,
        scope: str,
        policy_id: str,
        ttl_seconds: int = 0,
    ) -> BreakGlassRequest:
        requested_by = (requested_by or "").strip()
        reason = (reason or "").strip()
        scope = (scope or "").strip()
        policy_id = (policy_id or "").strip()
        if not (requested_by and reason and scope and policy_id):
            raise ValidationError("requested_by, reason, scope, and policy_id are required")
        ttl = ttl_seconds if ttl_seconds > 0 else DEFAULT_BREAKGLASS_TTL_SECONDS
        if ttl < MIN_BREAKGLASS_TTL_SECONDS:
            raise ValidationError(f"ttl_seconds must be >= {MIN_BREAKGLASS_TTL_SECONDS}")
        if ttl > MAX_BREAKGLASS_TTL_SECONDS:
            raise ValidationError(f"ttl_seconds must be <= {MAX_BREAKGLASS_TTL_SECONDS}")
        with self._lock:
            policy = self._policies.get_live(policy_id)
            if policy is None:
                raise NotFoundError("approval policy not found")
            request = BreakGlassRequest(
                requested_by=requested_by,
                reason=reason,
                scope=scope,
                policy_id=policy.id,
                policy_name=policy.name,
                stages=[ApprovalStage(s.name, s.required_approvals) for s in policy.stages],
                ttl_seconds=ttl,
            )
            created = self._requests.create(request)
        logger.debug("break-glass request %s created for scope %s", created.id, scope)
        return created

    def list_break_glass_requests(self) -> list[BreakGlassRequest]:
        with self._lock:
            self._sweep(self._clock())
            return self._requests.list()

    def get_break_glass_request(self, request_id: str) -> BreakGlassRequest | None:
        with self._lock:
            self._sweep(self._clock())
            return self._requests.get(request_id)

    def approve(self, request_id: str, actor: str, comment: str = "") -> BreakGlassRequest:
        actor = self._require_actor(actor)
        with self._lock:
            now = self._clock()
            self._sweep(now)
            updated = self._requests.mutate(
                request_id,
                lambda request: _record_approval(request, actor, comment, now),
                missing="break-glass request not found",
                now=now,
            )
        if updated.status == BreakGlassStatus.ACTIVE:
            control_metrics.record_breakglass_transition(BreakGlassStatus.ACTIVE)
            logger.info(
                "break-glass request %s activated until %s", updated.id, updated.expires_at
            )
        return updated

    def reject(self, request_id: str, actor: str, comment: str = "") -> BreakGlassRequest:
        actor = self._require_actor(actor)

        def _reject(request: BreakGlassRequest) -> None:
            if request.status != BreakGlassStatus.PENDING:
                raise ConflictError("break-glass request is not pending approval")
            request.approvals.append(
                ApprovalRecord(
                    actor=actor,
                    decision=ApprovalDecision.REJECT,
                    comment=comment.strip(),
                    stage_index=request.current_stage,
                    stage_name=request.stage_name_or("pending"),
                    created_at=now,
                )
            )
            request.status = BreakGlassStatus.REJECTED
            request.rejected_at = now
            request.rejection_reason = comment.strip()

        with self._lock:
            now = self._clock()
            self._sweep(now)
            updated = self._requests.mutate(
                request_id, _reject, missing="break-glass request not found", now=now
            )
        control_metrics.record_breakglass_transition(BreakGlassStatus.REJECTED)
        logger.info("break-glass request %s rejected by %s", updated.id, actor)
        return updated

    def revoke(self, request_id: str, actor: str, reason: str = "") -> BreakGlassRequest:
        actor = self._require_actor(actor)

        def _revoke(request: BreakGlassRequest) -> None:
            if request.status not in (BreakGlassStatus.PENDING, BreakGlassStatus.ACTIVE):
                raise ConflictError("break-glass request cannot be revoked from current status")
            request.approvals.append(
                ApprovalRecord(
                    actor=actor,
                    decision=ApprovalDecision.REVOKE,
                    comment=reason.strip(),
                    stage_index=request.current_stage,
                    stage_name=request.stage_name_or("revoke"),
                    created_at=now,
                )
            )
            request.status = BreakGlassStatus.REVOKED
            request.revoked_at = now

        with self._lock:
            now = self._clock()
            self._sweep(now)
            updated = self._requests.mutate(
                request_id, _revoke, missing="break-glass request not found", now=now
            )
        control_metrics.record_breakglass_transition(BreakGlassStatus.REVOKED)
        logger.info("break-glass request %s revoked by %s", updated.id, actor)
        return updated

    def _sweep(self, now: datetime) -> None:
        for request in sweep_expired(self._requests.live(), now, _BREAKGLASS_EXPIRY):
            control_metrics.record_breakglass_transition(BreakGlassStatus.EXPIRED)
            logger.debug("break-glass request %s expired", request.id)

    @staticmethod
    def _require_actor(actor: str) -> str:
        actor = (actor or "").strip()
        if not actor:
            raise ValidationError("actor is required")
        return actor


__all__ = [
    "AccessApprovalStore",
    "ApprovalDecision",
    "ApprovalPolicy",
    "ApprovalRecord",
    "ApprovalStage",
    "BreakGlassRequest",
    "BreakGlassStatus",
    "normalize_stages",
]
