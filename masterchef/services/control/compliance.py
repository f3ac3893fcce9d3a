"""Compliance profiles, scans, exceptions, continuous runs and evidence export."""

from __future__ import annotations

import csv
import hashlib
import io
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Iterable, Mapping

from masterchef.foundation.common.timeutils import Clock, parse_rfc3339, utc_now

from .errors import ConflictError, NotFoundError, ValidationError
from .storage import ExpiryRule, KeyedStore, Record, dataclass_to_dict, sweep_expired, to_jsonable

logger = logging.getLogger(__name__)

FRAMEWORKS = ("cis", "stig", "custom")
SEVERITIES = ("low", "medium", "high", "critical")
SCORECARD_DIMENSIONS = ("team", "environment", "service")

DEFAULT_CONTINUOUS_INTERVAL = 300
MIN_CONTINUOUS_INTERVAL = 60
MAX_CONTINUOUS_INTERVAL = 86400
MAX_EXCEPTION_WINDOW = timedelta(days=365)

EVIDENCE_CSV_HEADER = (
    "scan_id",
    "profile_id",
    "target_kind",
    "target_name",
    "control_id",
    "status",
    "severity",
    "message",
    "evidence",
)
SARIF_SCHEMA = "https://json.schemastore.org/sarif-2.1.0.json"


class ExceptionStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


_EXCEPTION_EXPIRY = ExpiryRule(
    expirable=frozenset({ExceptionStatus.PENDING, ExceptionStatus.APPROVED}),
    terminal=ExceptionStatus.EXPIRED,
)


@dataclass
class ComplianceControl:
    id: str
    description: str
    severity: str = "medium"


@dataclass
class ComplianceProfile(Record):
    name: str
    framework: str
    controls: list[ComplianceControl] = field(default_factory=list)
    version: str = ""
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def has_control(self, control_id: str) -> bool:
        return any(control.id == control_id for control in self.controls)


@dataclass
class ComplianceFinding:
    control_id: str
    status: str
    severity: str
    message: str
    evidence: str


@dataclass
class ComplianceScan(Record):
    profile_id: str
    target_kind: str
    target_name: str
    status: str
    score: int
    started_at: datetime
    ended_at: datetime
    findings: list[ComplianceFinding] = field(default_factory=list)
    team: str = ""
    environment: str = ""
    service: str = ""
    id: str = ""


@dataclass
class ExceptionDecision:
    actor: str
    decision: str
    created_at: datetime
    comment: str = ""


@dataclass
class ComplianceException(Record):
    profile_id: str
    control_id: str
    target_kind: str
    target_name: str
    reason: str
    requested_by: str
    expires_at: datetime
    status: ExceptionStatus = ExceptionStatus.PENDING
    approvals: list[ExceptionDecision] = field(default_factory=list)
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def covers(self, profile_id: str, control_id: str, kind: str, name: str) -> bool:
        return (
            self.profile_id == profile_id
            and self.control_id == control_id
            and self.target_kind == kind
            and self.target_name == name
        )


@dataclass
class ContinuousConfig(Record):
    profile_id: str
    target_kind: str
    target_name: str
    interval_seconds: int = DEFAULT_CONTINUOUS_INTERVAL
    enabled: bool = True
    last_scan_id: str = ""
    last_run_at: datetime | None = None
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ComplianceScorecard:
    dimension: str
    key: str
    scan_count: int
    pass_count: int
    fail_count: int
    average_score: int
    last_scan_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return dataclass_to_dict(self)


def evaluate_control(control_id: str, target_kind: str, target_name: str) -> str:
    """Deterministic stand-in evaluation: one digest bucket in five fails."""

    digest = hashlib.sha256(f"{control_id}|{target_kind}|{target_name}".encode("utf-8")).digest()
    return "fail" if digest[0] % 5 == 0 else "pass"


def normalize_controls(
    controls: Iterable[ComplianceControl | Mapping[str, Any]] | None,
) -> list[ComplianceControl]:
    raw = list(controls or [])
    if not raw:
        raise ValidationError("at least one control is required")
    result: list[ComplianceControl] = []
    for control in raw:
        if isinstance(control, Mapping):
            control_id = control.get("id")
            description = control.get("description")
            severity = control.get("severity")
        else:
            control_id, description, severity = control.id, control.description, control.severity
        control_id = str(control_id or "").strip()
        description = str(description or "").strip()
        severity = str(severity or "").strip().lower() or "medium"
        if not control_id or not description:
            raise ValidationError("control id and description are required")
        if severity not in SEVERITIES:
            raise ValidationError("control severity must be low, medium, high, or critical")
        result.append(ComplianceControl(id=control_id, description=description, severity=severity))
    return result


class ComplianceStore:
    """Profiles and everything evaluated against them, behind one lock."""

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._profiles: KeyedStore[ComplianceProfile] = KeyedStore(
            "compliance-profile", clock=clock, lock=self._lock
        )
        self._scans: KeyedStore[ComplianceScan] = KeyedStore(
            "compliance-scan",
            clock=clock,
            lock=self._lock,
            sort_key=lambda scan: scan.started_at,
        )
        self._exceptions: KeyedStore[ComplianceException] = KeyedStore(
            "compliance-exception", clock=clock, lock=self._lock
        )
        self._continuous: KeyedStore[ContinuousConfig] = KeyedStore(
            "compliance-continuous", clock=clock, lock=self._lock
        )

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------
    def create_profile(
        self,
        *,
        name: str,
        framework: str,
        controls: Iterable[ComplianceControl | Mapping[str, Any]],
        version: str = "",
    ) -> ComplianceProfile:
        name = (name or "").strip()
        framework = (framework or "").strip().lower()
        if not name or not framework:
            raise ValidationError("name and framework are required")
        if framework not in FRAMEWORKS:
            raise ValidationError("framework must be cis, stig, or custom")
        profile = ComplianceProfile(
            name=name,
            framework=framework,
            controls=normalize_controls(controls),
            version=(version or "").strip(),
        )
        return self._profiles.create(profile)

    def list_profiles(self) -> list[ComplianceProfile]:
        return self._profiles.list()

    def get_profile(self, profile_id: str) -> ComplianceProfile | None:
        return self._profiles.get(profile_id)

    # ------------------------------------------------------------------
    # Exceptions
    # ------------------------------------------------------------------
    def create_exception(
        self,
        *,
        profile_id: str,
        control_id: str,
        target_kind: str,
        target_name: str,
        reason: str,
        requested_by: str,
        expires_at: str,
    ) -> ComplianceException:
        values = [
            (item or "").strip()
            for item in (profile_id, control_id, target_kind, target_name, reason, requested_by)
        ]
        if not all(values):
            raise ValidationError(
                "profile_id, control_id, target_kind, target_name, reason, and requested_by are required"
            )
        profile_id, control_id, target_kind, target_name, reason, requested_by = values
        try:
            deadline = parse_rfc3339(expires_at)
        except ValueError as exc:
            raise ValidationError("expires_at must be RFC3339") from exc
        now = self._clock()
        if deadline <= now:
            raise ValidationError("expires_at must be in the future")
        if deadline > now + MAX_EXCEPTION_WINDOW:
            raise ValidationError("expires_at must be within 365 days")
        with self._lock:
            profile = self._profiles.get_live(profile_id)
            if profile is None:
                raise NotFoundError("compliance profile not found")
            if not profile.has_control(control_id):
                raise ValidationError("control_id does not belong to profile")
            created = self._exceptions.create(
                ComplianceException(
                    profile_id=profile_id,
                    control_id=control_id,
                    target_kind=target_kind,
                    target_name=target_name,
                    reason=reason,
                    requested_by=requested_by,
                    expires_at=deadline,
                ),
                now=now,
            )
        logger.debug("compliance exception %s requested for %s", created.id, control_id)
        return created

    def list_exceptions(self) -> list[ComplianceException]:
        with self._lock:
            self._sweep(self._clock())
            return self._exceptions.list()

    def get_exception(self, exception_id: str) -> ComplianceException | None:
        with self._lock:
            self._sweep(self._clock())
            return self._exceptions.get(exception_id)

    def approve_exception(self, exception_id: str, actor: str, comment: str = "") -> ComplianceException:
        return self._decide(exception_id, actor, "approve", comment)

    def reject_exception(self, exception_id: str, actor: str, comment: str = "") -> ComplianceException:
        return self._decide(exception_id, actor, "reject", comment)

    def _decide(self, exception_id: str, actor: str, decision: str, comment: str) -> ComplianceException:
        exception_id = (exception_id or "").strip()
        actor = (actor or "").strip()
        if not exception_id or not actor:
            raise ValidationError("id and actor are required")

        def _apply(item: ComplianceException) -> None:
            if item.status != ExceptionStatus.PENDING:
                raise ConflictError("compliance exception is not pending")
            item.approvals.append(
                ExceptionDecision(
                    actor=actor, decision=decision, comment=(comment or "").strip(), created_at=now
                )
            )
            item.status = (
                ExceptionStatus.APPROVED if decision == "approve" else ExceptionStatus.REJECTED
            )

        with self._lock:
            now = self._clock()
            self._sweep(now)
            updated = self._exceptions.mutate(
                exception_id, _apply, missing="compliance exception not found", now=now
            )
        logger.info("compliance exception %s %s by %s", updated.id, updated.status, actor)
        return updated

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------
    def run_scan(
        self,
        *,
        profile_id: str,
        target_kind: str,
        target_name: str,
        team: str = "",
        environment: str = "",
        service: str = "",
    ) -> ComplianceScan:
        profile_id = (profile_id or "").strip()
        target_kind = (target_kind or "").strip()
        target_name = (target_name or "").strip()
        if not profile_id or not target_kind or not target_name:
            raise ValidationError("profile_id, target_kind, and target_name are required")
        with self._lock:
            started_at = self._clock()
            self._sweep(started_at)
            profile = self._profiles.get_live(profile_id)
            if profile is None:
                raise NotFoundError("compliance profile not found")
            findings: list[ComplianceFinding] = []
            passed = 0
            for control in profile.controls:
                waiver = self._matching_waiver_locked(
                    profile_id, control.id, target_kind, target_name, started_at
                )
                if waiver is not None:
                    passed += 1
                    findings.append(
                        ComplianceFinding(
                            control_id=control.id,
                            status="waived",
                            severity=control.severity,
                            message=f"{control.id} control waived by approved exception {waiver.id}",
                            evidence=f"exception={waiver.id} target={target_kind}/{target_name}",
                        )
                    )
                    continue
                status = evaluate_control(control.id, target_kind, target_name)
                if status == "pass":
                    passed += 1
                findings.append(
                    ComplianceFinding(
                        control_id=control.id,
                        status=status,
                        severity=control.severity,
                        message=f"{control.id} control evaluated as {status}",
                        evidence=(
                            f"target={target_kind}/{target_name} framework={profile.framework}"
                        ),
                    )
                )
            score = (passed * 100) // len(findings) if findings else 100
            scan = ComplianceScan(
                id=self._scans.next_id(),
                profile_id=profile.id,
                target_kind=target_kind,
                target_name=target_name,
                team=(team or "").strip(),
                environment=(environment or "").strip(),
                service=(service or "").strip(),
                status="pass" if score == 100 else "fail",
                score=score,
                started_at=started_at,
                ended_at=self._clock(),
                findings=findings,
            )
            self._scans.put_live(scan)
            result = scan.clone()
        logger.debug("compliance scan %s scored %d for %s/%s", result.id, score, target_kind, target_name)
        return result

    def list_scans(self) -> list[ComplianceScan]:
        return self._scans.list()

    def get_scan(self, scan_id: str) -> ComplianceScan | None:
        return self._scans.get(scan_id)

    def _matching_waiver_locked(
        self, profile_id: str, control_id: str, kind: str, name: str, now: datetime
    ) -> ComplianceException | None:
        for item in self._exceptions.live():
            if item.status != ExceptionStatus.APPROVED or item.expires_at <= now:
                continue
            if item.covers(profile_id, control_id, kind, name):
                return item
        return None

    # ------------------------------------------------------------------
    # Continuous runs
    # ------------------------------------------------------------------
    def upsert_continuous_config(
        self,
        *,
        profile_id: str,
        target_kind: str,
        target_name: str,
        interval_seconds: int = 0,
        enabled: bool | None = None,
    ) -> ContinuousConfig:
        """Create or update the schedule for one ``(profile, kind, name)`` target."""

        profile_id = (profile_id or "").strip()
        target_kind = (target_kind or "").strip()
        target_name = (target_name or "").strip()
        if not profile_id or not target_kind or not target_name:
            raise ValidationError("profile_id, target_kind, and target_name are required")
        interval = interval_seconds if interval_seconds > 0 else DEFAULT_CONTINUOUS_INTERVAL
        if interval < MIN_CONTINUOUS_INTERVAL:
            raise ValidationError(f"interval_seconds must be >= {MIN_CONTINUOUS_INTERVAL}")
        if interval > MAX_CONTINUOUS_INTERVAL:
            raise ValidationError(f"interval_seconds must be <= {MAX_CONTINUOUS_INTERVAL}")
        is_enabled = True if enabled is None else bool(enabled)
        with self._lock:
            if self._profiles.get_live(profile_id) is None:
                raise NotFoundError("compliance profile not found")
            for existing in self._continuous.live():
                if (existing.profile_id, existing.target_kind, existing.target_name) == (
                    profile_id,
                    target_kind,
                    target_name,
                ):

                    def _update(item: ContinuousConfig) -> None:
                        item.interval_seconds = interval
                        item.enabled = is_enabled

                    return self._continuous.mutate(existing.id, _update)
            return self._continuous.create(
                ContinuousConfig(
                    profile_id=profile_id,
                    target_kind=target_kind,
                    target_name=target_name,
                    interval_seconds=interval,
                    enabled=is_enabled,
                )
            )

    def list_continuous_configs(self) -> list[ContinuousConfig]:
        return self._continuous.list()

    def run_continuous_scan(self, config_id: str) -> tuple[ComplianceScan, ContinuousConfig]:
        config_id = (config_id or "").strip()
        if not config_id:
            raise ValidationError("continuous config id is required")
        with self._lock:
            config = self._continuous.get_live(config_id)
            if config is None:
                raise NotFoundError("continuous compliance config not found")
            if not config.enabled:
                raise ConflictError("continuous compliance config is disabled")
            scan = self.run_scan(
                profile_id=config.profile_id,
                target_kind=config.target_kind,
                target_name=config.target_name,
            )
            now = self._clock()

            def _stamp(item: ContinuousConfig) -> None:
                item.last_scan_id = scan.id
                item.last_run_at = now

            updated = self._continuous.mutate(config_id, _stamp, now=now)
        return scan, updated

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def scorecards(self, dimension: str = "team") -> list[ComplianceScorecard]:
        """Aggregate scans by *dimension*, best average score first."""

        dimension = (dimension or "").strip().lower() or "team"
        if dimension not in SCORECARD_DIMENSIONS:
            raise ValidationError("dimension must be team, environment, or service")
        totals: dict[str, dict[str, Any]] = {}
        for scan in self._scans.list():
            key = getattr(scan, dimension).strip()
            if not key:
                continue
            bucket = totals.setdefault(
                key, {"scans": 0, "pass": 0, "fail": 0, "score": 0, "last": None}
            )
            bucket["scans"] += 1
            bucket["score"] += scan.score
            bucket["pass" if scan.status == "pass" else "fail"] += 1
            if bucket["last"] is None or scan.ended_at > bucket["last"]:
                bucket["last"] = scan.ended_at
        cards = [
            ComplianceScorecard(
                dimension=dimension,
                key=key,
                scan_count=bucket["scans"],
                pass_count=bucket["pass"],
                fail_count=bucket["fail"],
                average_score=bucket["score"] // bucket["scans"],
                last_scan_at=bucket["last"],
            )
            for key, bucket in totals.items()
        ]
        cards.sort(key=lambda card: (-card.average_score, card.key))
        return cards

    def export_evidence(self, scan_id: str, fmt: str = "json") -> tuple[bytes, str]:
        """Render a scan as ``json``, ``csv`` or ``sarif``; returns ``(body, content_type)``."""

        scan = self.get_scan(scan_id)
        if scan is None:
            raise NotFoundError("compliance scan not found")
        fmt = (fmt or "").strip().lower() or "json"
        if fmt == "json":
            payload = {"scan": scan.to_dict(), "generated": to_jsonable(self._clock()), "format": "json"}
            return json.dumps(payload, indent=2).encode("utf-8"), "application/json"
        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(EVIDENCE_CSV_HEADER)
            for finding in scan.findings:
                writer.writerow(
                    [
                        scan.id,
                        scan.profile_id,
                        scan.target_kind,
                        scan.target_name,
                        finding.control_id,
                        finding.status,
                        finding.severity,
                        finding.message,
                        finding.evidence,
                    ]
                )
            return buffer.getvalue().encode("utf-8"), "text/csv"
        if fmt == "sarif":
            sarif = {
                "version": "2.1.0",
                "$schema": SARIF_SCHEMA,
                "runs": [
                    {
                        "tool": {"driver": {"name": "masterchef-compliance", "version": "v1"}},
                        "results": [_sarif_result(scan, finding) for finding in scan.findings],
                    }
                ],
            }
            return json.dumps(sarif, indent=2).encode("utf-8"), "application/sarif+json"
        raise ValidationError("unsupported evidence format")

    def _sweep(self, now: datetime) -> None:
        for item in sweep_expired(self._exceptions.live(), now, _EXCEPTION_EXPIRY):
            logger.debug("compliance exception %s expired", item.id)


def _sarif_result(scan: ComplianceScan, finding: ComplianceFinding) -> dict[str, Any]:
    return {
        "ruleId": finding.control_id,
        "level": "error" if finding.status == "fail" else "note",
        "message": {"text": finding.message},
        "properties": {
            "severity": finding.severity,
            "status": finding.status,
            "evidence": finding.evidence,
            "target": f"{scan.target_kind}/{scan.target_name}",
        },
    }


__all__ = [
    "ComplianceControl",
    "ComplianceException",
    "ComplianceFinding",
    "ComplianceProfile",
    "ComplianceScan",
    "ComplianceScorecard",
    "ComplianceStore",
    "ContinuousConfig",
    "EVIDENCE_CSV_HEADER",
    "ExceptionDecision",
    "ExceptionStatus",
    "evaluate_control",
    "normalize_controls",
]
