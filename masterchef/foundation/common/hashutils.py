"""Digest helpers shared by the control-plane stores."""

from __future__ import annotations

import hashlib
import re
from typing import Final

_SHA256_PREFIX: Final[str] = "sha256:"

DIGEST_PATTERN: Final[re.Pattern[str]] = re.compile(r"^sha256:[a-f0-9]{64}$")

_FNV32_OFFSET: Final[int] = 0x811C9DC5
_FNV32_PRIME: Final[int] = 0x01000193


def sha256_hex(data: bytes | str) -> str:
    payload = data.encode("utf-8") if isinstance(data, str) else data
    return hashlib.sha256(payload).hexdigest()


def hash_bytes(data: bytes | str) -> str:
    """Return ``"sha256:<hex>"`` for *data*."""

    return f"{_SHA256_PREFIX}{sha256_hex(data)}"


def is_sha256_digest(value: str) -> bool:
    return bool(DIGEST_PATTERN.match((value or "").strip()))


def fnv32a(data: bytes | str) -> int:
    """32-bit FNV-1a hash of *data*."""

    payload = data.encode("utf-8") if isinstance(data, str) else data
    value = _FNV32_OFFSET
    for byte in payload:
        value ^= byte
        value = (value * _FNV32_PRIME) & 0xFFFFFFFF
    return value


__all__ = [
    "DIGEST_PATTERN",
    "fnv32a",
    "hash_bytes",
    "is_sha256_digest",
    "sha256_hex",
]
