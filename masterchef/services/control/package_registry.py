"""Module and provider artifacts pinned by digest, checked against a signing policy."""

from __future__ import annotations

import logging
import threading
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Iterable, Mapping

from masterchef.foundation.common.hashutils import is_sha256_digest
from masterchef.foundation.common.strings import normalize, normalize_string_list
from masterchef.foundation.common.timeutils import Clock, utc_now

from .errors import NotFoundError, ValidationError
from .storage import KeyedStore, Record

logger = logging.getLogger(__name__)


class ArtifactKind(StrEnum):
    MODULE = "module"
    PROVIDER = "provider"


@dataclass
class PackageProvenance(Record):
    source_repo: str = ""
    source_ref: str = ""
    builder: str = ""
    build_timestamp: datetime | None = None
    sbom_digest: str = ""
    attestation_digest: str = ""

    @classmethod
    def coerce(cls, value: "PackageProvenance | Mapping[str, Any] | None") -> "PackageProvenance":
        if value is None:
            return cls()
        if isinstance(value, Mapping):
            value = cls(**{key: value[key] for key in value if key in cls.__dataclass_fields__})
        return cls(
            source_repo=(value.source_repo or "").strip(),
            source_ref=(value.source_ref or "").strip(),
            builder=(value.builder or "").strip(),
            build_timestamp=value.build_timestamp,
            sbom_digest=(value.sbom_digest or "").strip(),
            attestation_digest=(value.attestation_digest or "").strip(),
        )


@dataclass
class PackageArtifact(Record):
    kind: ArtifactKind
    name: str
    version: str
    digest: str
    signed: bool = False
    key_id: str = ""
    signature: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    provenance: PackageProvenance = field(default_factory=PackageProvenance)
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class SigningPolicy(Record):
    require_signed: bool = True
    trusted_key_ids: list[str] = field(default_factory=list)
    updated_at: datetime | None = None


@dataclass
class VerificationResult(Record):
    allowed: bool
    reason: str = ""
    artifact_id: str = ""


@dataclass
class CertificationPolicy(Record):
    require_conformance: bool = True
    min_test_pass_rate: float = 0.9
    max_high_vulns: int = 0
    max_critical_vulns: int = 0
    require_signed: bool = True
    min_maintainer_score: int = 0
    updated_at: datetime | None = None


@dataclass
class PackageCertification(Record):
    artifact_id: str
    certified: bool
    tier: str
    conformance_passed: bool = False
    test_pass_rate: float = 0.0
    high_vulnerabilities: int = 0
    critical_vulnerabilities: int = 0
    maintainer_score: int = 0
    reasons: list[str] = field(default_factory=list)
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


def certification_tier(test_pass_rate: float, maintainer_score: int) -> str:
    if test_pass_rate >= 0.99 and maintainer_score >= 90:
        return "gold"
    if test_pass_rate >= 0.95 and maintainer_score >= 75:
        return "silver"
    return "bronze"


class PackageRegistryStore:
    """Published artifacts plus the single signing policy that gates their use.

    The default policy requires signatures and trusts any key.
    """

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._artifacts: KeyedStore[PackageArtifact] = KeyedStore(
            "pkg-artifact", clock=clock, lock=self._lock
        )
        self._policy = SigningPolicy(require_signed=True, updated_at=clock())
        self._certification_policy = CertificationPolicy(updated_at=clock())
        self._certifications: KeyedStore[PackageCertification] = KeyedStore(
            "pkg-cert", clock=clock, lock=self._lock
        )

    def publish(
        self,
        *,
        kind: str,
        name: str,
        version: str,
        digest: str,
        signed: bool = False,
        key_id: str = "",
        signature: str = "",
        metadata: Mapping[str, str] | None = None,
        provenance: PackageProvenance | Mapping[str, Any] | None = None,
    ) -> PackageArtifact:
        kind = normalize(kind)
        name = (name or "").strip()
        version = (version or "").strip()
        digest = normalize(digest)
        if not (kind and name and version and digest):
            raise ValidationError("kind, name, version, and digest are required")
        try:
            artifact_kind = ArtifactKind(kind)
        except ValueError as exc:
            raise ValidationError("kind must be module or provider") from exc
        if not is_sha256_digest(digest):
            raise ValidationError("digest must be immutable sha256:<64-hex>")
        key_id = (key_id or "").strip()
        signature = (signature or "").strip()
        if signed and (not key_id or not signature):
            raise ValidationError("key_id and signature are required for signed artifact")
        cleaned_metadata = {
            str(key).strip(): str(value).strip()
            for key, value in (metadata or {}).items()
            if str(key).strip()
        }
        artifact = self._artifacts.create(
            PackageArtifact(
                kind=artifact_kind,
                name=name,
                version=version,
                digest=digest,
                signed=signed,
                key_id=key_id,
                signature=signature,
                metadata=cleaned_metadata,
                provenance=PackageProvenance.coerce(provenance),
            )
        )
        logger.debug("published %s %s@%s as %s", artifact_kind, name, version, artifact.id)
        return artifact

    def list_artifacts(self) -> list[PackageArtifact]:
        return self._artifacts.list()

    def get_artifact(self, artifact_id: str) -> PackageArtifact | None:
        return self._artifacts.get(artifact_id)

    def policy(self) -> SigningPolicy:
        with self._lock:
            return deepcopy(self._policy)

    def set_policy(self, *, require_signed: bool, trusted_key_ids: Iterable[str] | None = None) -> SigningPolicy:
        policy = SigningPolicy(
            require_signed=require_signed,
            trusted_key_ids=normalize_string_list(trusted_key_ids),
            updated_at=self._clock(),
        )
        with self._lock:
            self._policy = policy
        logger.info(
            "package signing policy updated (require_signed=%s, trusted keys=%d)",
            require_signed,
            len(policy.trusted_key_ids),
        )
        return deepcopy(policy)

    def verify(self, artifact_id: str) -> VerificationResult:
        """Check an artifact against the current policy; denials are returned."""

        artifact_id = (artifact_id or "").strip()
        if not artifact_id:
            return VerificationResult(allowed=False, reason="artifact_id is required")
        with self._lock:
            artifact = self._artifacts.get(artifact_id)
            policy = deepcopy(self._policy)
        if artifact is None:
            return VerificationResult(allowed=False, reason="artifact not found", artifact_id=artifact_id)
        if policy.require_signed and not artifact.signed:
            return VerificationResult(
                allowed=False, reason="signed artifact required by policy", artifact_id=artifact.id
            )
        if artifact.signed:
            if not artifact.key_id or not artifact.signature:
                return VerificationResult(
                    allowed=False, reason="signed artifact missing key/signature", artifact_id=artifact.id
                )
            if policy.trusted_key_ids and normalize(artifact.key_id) not in policy.trusted_key_ids:
                return VerificationResult(
                    allowed=False, reason="artifact signing key not trusted", artifact_id=artifact.id
                )
        return VerificationResult(allowed=True, artifact_id=artifact.id)

    # ------------------------------------------------------------------
    # Certification
    # ------------------------------------------------------------------
    def certification_policy(self) -> CertificationPolicy:
        with self._lock:
            return self._certification_policy.clone()

    def set_certification_policy(
        self,
        *,
        require_conformance: bool = True,
        min_test_pass_rate: float = 0.9,
        max_high_vulns: int = 0,
        max_critical_vulns: int = 0,
        require_signed: bool = True,
        min_maintainer_score: int = 0,
    ) -> CertificationPolicy:
        if not 0.0 <= min_test_pass_rate <= 1.0:
            raise ValidationError("min_test_pass_rate must be between 0 and 1")
        if max_high_vulns < 0 or max_critical_vulns < 0:
            raise ValidationError("vulnerability limits must be >= 0")
        if not 0 <= min_maintainer_score <= 100:
            raise ValidationError("min_maintainer_score must be between 0 and 100")
        policy = CertificationPolicy(
            require_conformance=require_conformance,
            min_test_pass_rate=min_test_pass_rate,
            max_high_vulns=max_high_vulns,
            max_critical_vulns=max_critical_vulns,
            require_signed=require_signed,
            min_maintainer_score=min_maintainer_score,
            updated_at=self._clock(),
        )
        with self._lock:
            self._certification_policy = policy
        return policy.clone()

    def certify(
        self,
        *,
        artifact_id: str,
        conformance_passed: bool = False,
        test_pass_rate: float = 0.0,
        high_vulnerabilities: int = 0,
        critical_vulnerabilities: int = 0,
        maintainer_score: int = 0,
    ) -> PackageCertification:
        """Evaluate *artifact_id* against the certification policy and record the report.

        Failed checks are listed in ``reasons``; the report is stored either way.
        """

        artifact_id = (artifact_id or "").strip()
        if not artifact_id:
            raise ValidationError("artifact_id is required")
        if not 0.0 <= test_pass_rate <= 1.0:
            raise ValidationError("test_pass_rate must be between 0 and 1")
        if high_vulnerabilities < 0 or critical_vulnerabilities < 0:
            raise ValidationError("vulnerability counts must be >= 0")
        if not 0 <= maintainer_score <= 100:
            raise ValidationError("maintainer_score must be between 0 and 100")
        with self._lock:
            artifact = self._artifacts.get_live(artifact_id)
            if artifact is None:
                raise NotFoundError("artifact not found")
            policy = self._certification_policy
            reasons: list[str] = []
            if policy.require_conformance and not conformance_passed:
                reasons.append("conformance suite not passed")
            if test_pass_rate < policy.min_test_pass_rate:
                reasons.append("test pass rate below policy minimum")
            if high_vulnerabilities > policy.max_high_vulns:
                reasons.append("too many high vulnerabilities")
            if critical_vulnerabilities > policy.max_critical_vulns:
                reasons.append("too many critical vulnerabilities")
            if policy.require_signed and not artifact.signed:
                reasons.append("artifact is not signed")
            if maintainer_score < policy.min_maintainer_score:
                reasons.append("maintainer score below policy minimum")
            certified = not reasons
            report = self._certifications.create(
                PackageCertification(
                    artifact_id=artifact.id,
                    certified=certified,
                    tier=certification_tier(test_pass_rate, maintainer_score) if certified else "none",
                    conformance_passed=conformance_passed,
                    test_pass_rate=test_pass_rate,
                    high_vulnerabilities=high_vulnerabilities,
                    critical_vulnerabilities=critical_vulnerabilities,
                    maintainer_score=maintainer_score,
                    reasons=reasons,
                )
            )
        logger.info(
            "artifact %s certification %s (%s)", artifact_id, report.id, report.tier
        )
        return report

    def list_certifications(self, artifact_id: str = "") -> list[PackageCertification]:
        artifact_id = (artifact_id or "").strip()
        return self._certifications.list(
            lambda item: not artifact_id or item.artifact_id == artifact_id
        )


__all__ = [
    "ArtifactKind",
    "CertificationPolicy",
    "PackageCertification",
    "PackageArtifact",
    "PackageProvenance",
    "PackageRegistryStore",
    "SigningPolicy",
    "VerificationResult",
    "certification_tier",
]
