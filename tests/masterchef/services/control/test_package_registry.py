from __future__ import annotations

import pytest

from masterchef.services.control.errors import NotFoundError, ValidationError
from masterchef.services.control.package_registry import ArtifactKind, PackageRegistryStore

DIGEST = "sha256:" + "ab" * 32


def _publish(store: PackageRegistryStore, **overrides):
    params = dict(kind="module", name="nginx", version="1.2.0", digest=DIGEST)
    params.update(overrides)
    return store.publish(**params)


def test_publish_validates_and_normalizes(clock) -> None:
    store = PackageRegistryStore(clock=clock)
    artifact = _publish(
        store,
        kind="MODULE",
        digest=DIGEST.upper().replace("SHA256", "sha256"),
        metadata={" team ": " web ", "": "dropped"},
        provenance={"source_repo": " git@example:nginx ", "unknown": "x"},
    )
    assert artifact.id == "pkg-artifact-1"
    assert artifact.kind == ArtifactKind.MODULE
    assert artifact.digest == DIGEST
    assert artifact.metadata == {"team": "web"}
    assert artifact.provenance.source_repo == "git@example:nginx"
    assert store.get_artifact(artifact.id).name == "nginx"

    with pytest.raises(ValidationError, match="kind, name, version, and digest are required"):
        _publish(store, version=" ")
    with pytest.raises(ValidationError, match="kind must be module or provider"):
        _publish(store, kind="plugin")
    with pytest.raises(ValidationError, match=r"digest must be immutable sha256:<64-hex>"):
        _publish(store, digest="sha256:abc")
    with pytest.raises(ValidationError, match="key_id and signature are required for signed artifact"):
        _publish(store, signed=True, key_id="k1")


def test_list_is_newest_first(clock) -> None:
    store = PackageRegistryStore(clock=clock)
    first = _publish(store)
    clock.advance(1)
    second = _publish(store, kind="provider", name="aws")
    assert [a.id for a in store.list_artifacts()] == [second.id, first.id]


def test_default_policy_requires_signature_and_trusts_any_key(clock) -> None:
    store = PackageRegistryStore(clock=clock)
    policy = store.policy()
    assert policy.require_signed is True
    assert policy.trusted_key_ids == []

    unsigned = _publish(store)
    signed = _publish(store, signed=True, key_id="Release-Key", signature="sig")

    denied = store.verify(unsigned.id)
    assert (denied.allowed, denied.reason) == (False, "signed artifact required by policy")
    assert store.verify(signed.id).allowed is True
    assert store.verify("").reason == "artifact_id is required"
    assert store.verify("pkg-artifact-99").reason == "artifact not found"


def test_trusted_keys_gate_signed_artifacts(clock) -> None:
    store = PackageRegistryStore(clock=clock)
    trusted = _publish(store, signed=True, key_id="Release-Key", signature="sig")
    other = _publish(store, signed=True, key_id="dev-key", signature="sig")
    unsigned = _publish(store)

    clock.advance(5)
    policy = store.set_policy(require_signed=False, trusted_key_ids=[" RELEASE-key ", "release-key"])
    assert policy.trusted_key_ids == ["release-key"]
    assert policy.updated_at == clock.now

    assert store.verify(trusted.id).allowed is True
    assert store.verify(other.id).reason == "artifact signing key not trusted"
    assert store.verify(unsigned.id).allowed is True


def test_certify_records_pkg_cert_reports(clock) -> None:
    store = PackageRegistryStore(clock=clock)
    signed = _publish(store, signed=True, key_id="k1", signature="sig")
    unsigned = _publish(store, version="1.3.0")

    gold = store.certify(
        artifact_id=signed.id,
        conformance_passed=True,
        test_pass_rate=0.995,
        maintainer_score=95,
    )
    assert gold.id == "pkg-cert-1"
    assert gold.certified is True
    assert gold.tier == "gold"
    assert gold.reasons == []

    denied = store.certify(
        artifact_id=unsigned.id,
        conformance_passed=False,
        test_pass_rate=0.5,
        critical_vulnerabilities=1,
    )
    assert denied.id == "pkg-cert-2"
    assert denied.certified is False
    assert denied.tier == "none"
    assert "artifact is not signed" in denied.reasons
    assert "conformance suite not passed" in denied.reasons
    assert "too many critical vulnerabilities" in denied.reasons
    assert [c.id for c in store.list_certifications(signed.id)] == ["pkg-cert-1"]

    store.set_certification_policy(require_signed=False, require_conformance=False, min_test_pass_rate=0.0)
    bronze = store.certify(artifact_id=unsigned.id, test_pass_rate=0.5)
    assert bronze.certified is True
    assert bronze.tier == "bronze"


def test_certify_validates_inputs(clock) -> None:
    store = PackageRegistryStore(clock=clock)
    artifact = _publish(store)
    with pytest.raises(ValidationError, match="test_pass_rate must be between 0 and 1"):
        store.certify(artifact_id=artifact.id, test_pass_rate=1.5)
    with pytest.raises(ValidationError, match="maintainer_score must be between 0 and 100"):
        store.certify(artifact_id=artifact.id, maintainer_score=101)
    with pytest.raises(ValidationError, match="vulnerability counts must be >= 0"):
        store.certify(artifact_id=artifact.id, high_vulnerabilities=-1)
    with pytest.raises(NotFoundError, match="artifact not found"):
        store.certify(artifact_id="pkg-artifact-99")
    assert store.list_certifications() == []
