"""Accepted-command bookkeeping with idempotency keys and a dead-letter queue."""

from __future__ import annotations

import hashlib
import logging
import threading
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime

from masterchef.foundation.common.ids import IDAllocator
from masterchef.foundation.common.strings import normalize, normalize_priority
from masterchef.foundation.common.timeutils import Clock, utc_now

from . import metrics as control_metrics
from .storage import BoundedRing, Record

logger = logging.getLogger(__name__)

DEFAULT_DEAD_LETTER_LIMIT = 5000

ACCEPTED = "accepted"
DEAD_LETTER = "dead_letter"


def compute_command_checksum(
    action: str, config_path: str = "", priority: str = "", idempotency_key: str = ""
) -> str:
    parts = [
        normalize(action),
        (config_path or "").strip(),
        normalize_priority(priority),
        (idempotency_key or "").strip(),
    ]
    return hashlib.sha256("\n".join(parts).encode("utf-8")).hexdigest()


@dataclass
class CommandEnvelope(Record):
    action: str
    config_path: str = ""
    priority: str = ""
    idempotency_key: str = ""
    checksum: str = ""
    status: str = ""
    reason: str = ""
    id: str = ""
    received_at: datetime | None = None


class CommandIngestStore:
    """Accepted commands by id and idempotency key, rejected ones in a bounded DLQ.

    Accepted and dead-lettered envelopes draw from one counter, so ``cmd-``
    and ``dlq-`` identifiers never share a number.
    """

    def __init__(self, dead_letter_limit: int = DEFAULT_DEAD_LETTER_LIMIT, *, clock: Clock = utc_now) -> None:
        if dead_letter_limit <= 0:
            dead_letter_limit = DEFAULT_DEAD_LETTER_LIMIT
        self._clock = clock
        self._lock = threading.RLock()
        self._counter = IDAllocator("")
        self._accepted: dict[str, CommandEnvelope] = {}
        self._by_idempotency: dict[str, str] = {}
        self._dead_letters: BoundedRing[CommandEnvelope] = BoundedRing(dead_letter_limit)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}{self._counter.next()}"

    def record_accepted(self, envelope: CommandEnvelope) -> CommandEnvelope:
        """Store *envelope* as accepted.

        A repeated idempotency key returns the envelope recorded first.
        """

        key = (envelope.idempotency_key or "").strip()
        with self._lock:
            if key:
                existing_id = self._by_idempotency.get(key)
                existing = self._accepted.get(existing_id or "")
                if existing is not None:
                    logger.debug("command with idempotency key %s already accepted as %s", key, existing.id)
                    return deepcopy(existing)
            stored = deepcopy(envelope)
            stored.id = self._next_id("cmd")
            stored.status = ACCEPTED
            stored.received_at = self._clock()
            self._accepted[stored.id] = stored
            if key:
                self._by_idempotency[key] = stored.id
            return deepcopy(stored)

    def record_dead_letter(self, envelope: CommandEnvelope, reason: str) -> CommandEnvelope:
        with self._lock:
            stored = deepcopy(envelope)
            stored.id = self._next_id("dlq")
            stored.status = DEAD_LETTER
            stored.reason = (reason or "").strip()
            stored.received_at = self._clock()
            self._dead_letters.append(stored)
        control_metrics.dead_letters_total.inc()
        logger.warning("command %s dead-lettered: %s", stored.action, stored.reason)
        return deepcopy(stored)

    def dead_letters(self) -> list[CommandEnvelope]:
        """Retained dead letters, oldest first."""

        with self._lock:
            return [deepcopy(item) for item in self._dead_letters]

    def get(self, command_id: str) -> CommandEnvelope | None:
        with self._lock:
            item = self._accepted.get((command_id or "").strip())
            return deepcopy(item) if item is not None else None


__all__ = [
    "ACCEPTED",
    "CommandEnvelope",
    "CommandIngestStore",
    "DEAD_LETTER",
    "compute_command_checksum",
]
