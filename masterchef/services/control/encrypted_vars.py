"""Passphrase-encrypted variable files persisted under ``.masterchef/encrypted-vars``."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from pydantic import BaseModel, ConfigDict, ValidationError as ModelValidationError

from masterchef.foundation.common.strings import normalize
from masterchef.foundation.common.timeutils import Clock, format_rfc3339_nano, utc_now

from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

STORE_SUBDIR = Path(".masterchef") / "encrypted-vars"
MANIFEST_NAME = "manifest.json"
NONCE_SIZE = 12
TAG_SIZE = 16
FILE_MODE = 0o600
DIR_MODE = 0o755


class EncryptedVariableFile(BaseModel):
    """On-disk form of one encrypted entry."""

    model_config = ConfigDict(extra="ignore")

    name: str
    key_version: int
    ciphertext: str
    nonce: str
    updated_at: datetime

    def summary(self) -> "EncryptedVariableSummary":
        return EncryptedVariableSummary(
            name=self.name, key_version=self.key_version, updated_at=self.updated_at
        )


class EncryptedVariableSummary(BaseModel):
    name: str
    key_version: int
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "key_version": self.key_version,
            "updated_at": format_rfc3339_nano(self.updated_at),
        }


class EncryptedVariableManifest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    current_key_version: int = 0


class EncryptedVariableKeyStatus(BaseModel):
    current_key_version: int
    file_count: int


class EncryptedVariableRotation(BaseModel):
    previous_key_version: int
    current_key_version: int
    rotated_files: int
    rotated_at: datetime


def _derive_key(passphrase: str) -> bytes:
    return hashlib.sha256(passphrase.encode("utf-8")).digest()


def encrypt_payload(data: dict[str, Any], passphrase: str) -> tuple[str, str]:
    """Seal *data* with AES-256-GCM; returns base64 ``(ciphertext||tag, nonce)``."""

    plain = json.dumps(data, separators=(",", ":")).encode("utf-8")
    nonce = os.urandom(NONCE_SIZE)
    encryptor = Cipher(algorithms.AES(_derive_key(passphrase)), modes.GCM(nonce)).encryptor()
    sealed = encryptor.update(plain) + encryptor.finalize() + encryptor.tag
    return base64.b64encode(sealed).decode("ascii"), base64.b64encode(nonce).decode("ascii")


def decrypt_payload(ciphertext: str, nonce: str, passphrase: str) -> dict[str, Any]:
    try:
        sealed = base64.b64decode(ciphertext.strip(), validate=True)
        nonce_bytes = base64.b64decode(nonce.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("encrypted variable file is corrupt") from exc
    if len(sealed) < TAG_SIZE:
        raise ValidationError("encrypted variable file is corrupt")
    body, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    decryptor = Cipher(
        algorithms.AES(_derive_key(passphrase)), modes.GCM(nonce_bytes, tag)
    ).decryptor()
    try:
        plain = decryptor.update(body) + decryptor.finalize()
    except InvalidTag as exc:
        raise ValidationError("message authentication failed") from exc
    decoded = json.loads(plain.decode("utf-8"))
    return decoded if isinstance(decoded, dict) else {}


def _is_valid_name(name: str) -> bool:
    return (
        name != Path(MANIFEST_NAME).stem
        and ".." not in name
        and "/" not in name
        and "\\" not in name
    )


def _entry_name(raw: str) -> str:
    """Normalize *raw* into a name that maps to one file inside the store."""

    name = normalize(raw)
    if not name:
        raise ValidationError("name is required")
    if not _is_valid_name(name):
        raise ValidationError("invalid encrypted variable name")
    return name


def _write_private(path: Path, payload: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(payload)
    os.chmod(path, FILE_MODE)


class EncryptedVariableStore:
    """Named encrypted payloads with passphrase rotation.

    The lock is held across manifest and entry writes; nothing else may
    modify the directory while the store is alive.
    """

    def __init__(self, base_dir: str | Path = ".", *, clock: Clock = utc_now) -> None:
        self.root = Path(base_dir) / STORE_SUBDIR
        self.root.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        self.manifest_path = self.root / MANIFEST_NAME
        self._clock = clock
        self._lock = threading.RLock()
        self._files: dict[str, EncryptedVariableFile] = {}
        self._current_key_version = 0
        self._load()

    def upsert(self, name: str, data: dict[str, Any] | None, passphrase: str) -> EncryptedVariableSummary:
        name = _entry_name(name)
        if not (passphrase or "").strip():
            raise ValidationError("passphrase is required")
        ciphertext, nonce = encrypt_payload(data or {}, passphrase)
        with self._lock:
            if self._current_key_version <= 0:
                self._current_key_version = 1
            item = EncryptedVariableFile(
                name=name,
                key_version=self._current_key_version,
                ciphertext=ciphertext,
                nonce=nonce,
                updated_at=self._clock(),
            )
            self._files[name] = item
            self._persist_locked()
        logger.debug("encrypted variable file %s written at key version %d", name, item.key_version)
        return item.summary()

    def get(self, name: str, passphrase: str) -> tuple[dict[str, Any], EncryptedVariableSummary]:
        name = _entry_name(name)
        if not (passphrase or "").strip():
            raise ValidationError("passphrase is required")
        with self._lock:
            item = self._files.get(name)
        if item is None:
            raise NotFoundError("encrypted variable file not found")
        return decrypt_payload(item.ciphertext, item.nonce, passphrase), item.summary()

    def delete(self, name: str) -> bool:
        name = _entry_name(name)
        with self._lock:
            if self._files.pop(name, None) is None:
                return False
            (self.root / f"{name}.json").unlink(missing_ok=True)
            self._persist_manifest_locked()
        return True

    def list(self) -> list[EncryptedVariableSummary]:
        with self._lock:
            items = [item.summary() for item in self._files.values()]
        return sorted(items, key=lambda item: item.name)

    def key_status(self) -> EncryptedVariableKeyStatus:
        with self._lock:
            return EncryptedVariableKeyStatus(
                current_key_version=self._current_key_version, file_count=len(self._files)
            )

    def rotate(self, old_passphrase: str, new_passphrase: str) -> EncryptedVariableRotation:
        """Re-encrypt every entry under *new_passphrase*.

        Nothing is written unless every entry decrypts with *old_passphrase*.
        """

        old_passphrase = (old_passphrase or "").strip()
        new_passphrase = (new_passphrase or "").strip()
        if not old_passphrase or not new_passphrase:
            raise ValidationError("old_passphrase and new_passphrase are required")
        with self._lock:
            next_version = max(self._current_key_version + 1, 1)
            now = self._clock()
            updated: dict[str, EncryptedVariableFile] = {}
            for name, item in self._files.items():
                try:
                    plain = decrypt_payload(item.ciphertext, item.nonce, old_passphrase)
                except ValidationError as exc:
                    raise ValidationError(
                        "failed to decrypt existing files with old passphrase"
                    ) from exc
                ciphertext, nonce = encrypt_payload(plain, new_passphrase)
                updated[name] = item.model_copy(
                    update={
                        "ciphertext": ciphertext,
                        "nonce": nonce,
                        "key_version": next_version,
                        "updated_at": now,
                    }
                )
            previous = self._current_key_version
            self._files = updated
            self._current_key_version = next_version
            self._persist_locked()
        logger.info(
            "encrypted variables rotated from key version %d to %d (%d files)",
            previous,
            next_version,
            len(updated),
        )
        return EncryptedVariableRotation(
            previous_key_version=previous,
            current_key_version=next_version,
            rotated_files=len(updated),
            rotated_at=now,
        )

    def _load(self) -> None:
        with self._lock:
            if self.manifest_path.exists():
                try:
                    manifest = EncryptedVariableManifest.model_validate_json(
                        self.manifest_path.read_bytes()
                    )
                except ModelValidationError:
                    logger.warning("ignoring unreadable manifest %s", self.manifest_path)
                else:
                    self._current_key_version = manifest.current_key_version
            for path in sorted(self.root.glob("*.json")):
                if path == self.manifest_path:
                    continue
                try:
                    item = EncryptedVariableFile.model_validate_json(path.read_bytes())
                except ModelValidationError:
                    logger.warning("skipping malformed encrypted variable file %s", path)
                    continue
                name = normalize(item.name)
                if name and _is_valid_name(name):
                    self._files[name] = item.model_copy(update={"name": name})

    def _persist_locked(self) -> None:
        for item in self._files.values():
            payload = {
                "name": item.name,
                "key_version": item.key_version,
                "ciphertext": item.ciphertext,
                "nonce": item.nonce,
                "updated_at": format_rfc3339_nano(item.updated_at),
            }
            _write_private(self.root / f"{item.name}.json", json.dumps(payload, indent=2) + "\n")
        self._persist_manifest_locked()

    def _persist_manifest_locked(self) -> None:
        payload = {"current_key_version": self._current_key_version}
        _write_private(self.manifest_path, json.dumps(payload, indent=2) + "\n")


__all__ = [
    "EncryptedVariableFile",
    "EncryptedVariableKeyStatus",
    "EncryptedVariableRotation",
    "EncryptedVariableStore",
    "EncryptedVariableSummary",
    "decrypt_payload",
    "encrypt_payload",
]
