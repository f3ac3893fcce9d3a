"""Lazy expiry for records carrying an ``expires_at`` deadline."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable


@dataclass(frozen=True)
class ExpiryRule:
    """Which statuses may lapse and the status they lapse into."""

    expirable: frozenset[str]
    terminal: str = "expired"
    status_attr: str = "status"
    deadline_attr: str = "expires_at"

    def is_due(self, record: Any, now: datetime) -> bool:
        if getattr(record, self.status_attr) not in self.expirable:
            return False
        deadline = getattr(record, self.deadline_attr)
        return deadline is not None and deadline <= now


def sweep_expired(records: Iterable[Any], now: datetime, rule: ExpiryRule) -> list[Any]:
    """Move every due record to ``rule.terminal`` in place.

    Callers must hold the owning store's lock. Returns the swept records.
    """

    swept: list[Any] = []
    for record in records:
        if not rule.is_due(record, now):
            continue
        setattr(record, rule.status_attr, rule.terminal)
        record.updated_at = now
        swept.append(record)
    return swept


__all__ = ["ExpiryRule", "sweep_expired"]
