"""Monotonic identifier allocation."""

from __future__ import annotations

import threading


class IDAllocator:
    """Hand out ``"<prefix>-<N>"`` identifiers from a per-store counter.

    Identifiers are never reused, even after the owning record is deleted.
    """

    def __init__(self, prefix: str, *, start: int = 0) -> None:
        self.prefix = prefix
        self._value = start
        self._lock = threading.Lock()

    def next(self) -> str:
        with self._lock:
            self._value += 1
            return f"{self.prefix}-{self._value}"

    @property
    def value(self) -> int:
        return self._value


def id_sequence(identifier: str) -> int:
    """Return the numeric suffix of *identifier*, or ``0`` when absent."""

    _, _, tail = identifier.rpartition("-")
    try:
        return int(tail)
    except ValueError:
        return 0


__all__ = ["IDAllocator", "id_sequence"]
