from __future__ import annotations

import json
import stat

import pytest

from masterchef.services.control.encrypted_vars import (
    STORE_SUBDIR,
    EncryptedVariableStore,
    decrypt_payload,
    encrypt_payload,
)
from masterchef.services.control.errors import NotFoundError, ValidationError


def test_payload_roundtrip_and_wrong_passphrase() -> None:
    ciphertext, nonce = encrypt_payload({"db": {"password": "hunter2"}}, "correct horse")
    assert decrypt_payload(ciphertext, nonce, "correct horse") == {"db": {"password": "hunter2"}}
    with pytest.raises(ValidationError, match="message authentication failed"):
        decrypt_payload(ciphertext, nonce, "battery staple")
    with pytest.raises(ValidationError, match="corrupt"):
        decrypt_payload("not base64!", nonce, "correct horse")


def test_upsert_persists_private_files(tmp_path, clock) -> None:
    store = EncryptedVariableStore(tmp_path, clock=clock)
    summary = store.upsert("DB-Creds", {"user": "app"}, "pass-1")

    assert summary.name == "db-creds"
    assert summary.key_version == 1
    path = tmp_path / STORE_SUBDIR / "db-creds.json"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    on_disk = json.loads(path.read_text())
    assert "app" not in on_disk["ciphertext"]
    assert on_disk["updated_at"] == "2026-01-02T03:04:05Z"

    reopened = EncryptedVariableStore(tmp_path, clock=clock)
    data, loaded = reopened.get("db-creds", "pass-1")
    assert data == {"user": "app"}
    assert loaded.key_version == 1
    assert reopened.key_status().current_key_version == 1
    assert [item.name for item in reopened.list()] == ["db-creds"]


def test_get_and_delete_errors(tmp_path, clock) -> None:
    store = EncryptedVariableStore(tmp_path, clock=clock)
    store.upsert("api", {"token": "t"}, "pw")
    with pytest.raises(ValidationError, match="message authentication failed"):
        store.get("api", "wrong")
    with pytest.raises(NotFoundError, match="encrypted variable file not found"):
        store.get("missing", "pw")
    with pytest.raises(ValidationError, match="passphrase is required"):
        store.upsert("api", {}, " ")

    assert store.delete("api") is True
    assert store.delete("api") is False
    assert not (tmp_path / STORE_SUBDIR / "api.json").exists()


def test_rotate_reencrypts_everything(tmp_path, clock) -> None:
    store = EncryptedVariableStore(tmp_path, clock=clock)
    store.upsert("a", {"n": 1}, "old")
    store.upsert("b", {"n": 2}, "old")

    clock.advance(60)
    rotation = store.rotate("old", "new")
    assert (rotation.previous_key_version, rotation.current_key_version) == (1, 2)
    assert rotation.rotated_files == 2
    assert rotation.rotated_at == clock.now

    data, summary = store.get("b", "new")
    assert data == {"n": 2}
    assert summary.key_version == 2
    with pytest.raises(ValidationError):
        store.get("a", "old")
    assert store.upsert("c", {}, "new").key_version == 2


def test_rotate_with_wrong_passphrase_changes_nothing(tmp_path, clock) -> None:
    store = EncryptedVariableStore(tmp_path, clock=clock)
    store.upsert("a", {"n": 1}, "old")
    with pytest.raises(ValidationError, match="failed to decrypt existing files with old passphrase"):
        store.rotate("wrong", "new")
    assert store.key_status().current_key_version == 1
    assert store.get("a", "old")[0] == {"n": 1}


@pytest.mark.parametrize("name", ["manifest", "MANIFEST", "../escaped", "nested/app", "win\\app", ".."])
def test_names_must_map_to_one_entry_file(tmp_path, clock, name) -> None:
    store = EncryptedVariableStore(tmp_path, clock=clock)
    with pytest.raises(ValidationError, match="invalid encrypted variable name"):
        store.upsert(name, {"x": 1}, "pw")
    with pytest.raises(ValidationError, match="invalid encrypted variable name"):
        store.get(name, "pw")

    assert not (tmp_path / ".masterchef" / "escaped.json").exists()
    assert EncryptedVariableStore(tmp_path, clock=clock).list() == []


def test_manifest_survives_alongside_entries(tmp_path, clock) -> None:
    store = EncryptedVariableStore(tmp_path, clock=clock)
    store.upsert("app", {"x": 1}, "pw")
    with pytest.raises(ValidationError):
        store.upsert("manifest", {"x": 2}, "pw")

    reopened = EncryptedVariableStore(tmp_path, clock=clock)
    assert [item.name for item in reopened.list()] == ["app"]
    assert reopened.key_status().current_key_version == 1
