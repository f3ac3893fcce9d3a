"""Record of events that asked for a convergence run and what became of them."""

from __future__ import annotations

import logging
import threading
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Mapping

from masterchef.foundation.common.ids import IDAllocator
from masterchef.foundation.common.strings import normalize, normalize_priority
from masterchef.foundation.common.timeutils import Clock, utc_now

from .errors import ValidationError
from .storage import BoundedRing, Record

logger = logging.getLogger(__name__)

DEFAULT_TRIGGER_HISTORY = 2000


class TriggerSource(StrEnum):
    POLICY = "policy"
    PACKAGE = "package"
    SECURITY = "security"
    MANUAL = "manual"


class TriggerStatus(StrEnum):
    RECORDED = "recorded"
    QUEUED = "queued"
    BLOCKED = "blocked"


@dataclass
class ConvergeTrigger(Record):
    id: str
    source: TriggerSource
    config_path: str
    priority: str
    created_at: datetime
    event_type: str = ""
    event_id: str = ""
    idempotency_key: str = ""
    force: bool = False
    auto_enqueue: bool = False
    status: TriggerStatus = TriggerStatus.RECORDED
    job_id: str = ""
    enqueue_error: str = ""
    payload: dict[str, Any] | None = field(default=None)


class ConvergeTriggerStore:
    """Newest ``history_limit`` triggers; older ones are evicted silently."""

    def __init__(self, history_limit: int = DEFAULT_TRIGGER_HISTORY, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._ids = IDAllocator("trg")
        self._items: BoundedRing[ConvergeTrigger] = BoundedRing(
            history_limit if history_limit > 0 else DEFAULT_TRIGGER_HISTORY
        )

    def new_trigger(
        self,
        *,
        source: str,
        config_path: str,
        event_type: str = "",
        event_id: str = "",
        priority: str = "",
        idempotency_key: str = "",
        force: bool = False,
        auto_enqueue: bool = False,
        payload: Mapping[str, Any] | None = None,
    ) -> ConvergeTrigger:
        try:
            trigger_source = TriggerSource(normalize(source))
        except ValueError as exc:
            raise ValidationError("source must be one of policy, package, security, manual") from exc
        config_path = (config_path or "").strip()
        if not config_path:
            raise ValidationError("config_path is required")
        cleaned_payload = {str(k).strip(): deepcopy(v) for k, v in (payload or {}).items()} or None
        with self._lock:
            trigger = ConvergeTrigger(
                id=self._ids.next(),
                source=trigger_source,
                config_path=config_path,
                priority=normalize_priority(priority),
                created_at=self._clock(),
                event_type=(event_type or "").strip(),
                event_id=(event_id or "").strip(),
                idempotency_key=(idempotency_key or "").strip(),
                force=force,
                auto_enqueue=auto_enqueue,
                payload=cleaned_payload,
            )
            self._items.append(trigger)
            result = trigger.clone()
        logger.debug("converge trigger %s recorded from %s for %s", result.id, trigger_source, config_path)
        return result

    def update_outcome(
        self, trigger_id: str, status: str, job_id: str = "", enqueue_error: str = ""
    ) -> ConvergeTrigger | None:
        try:
            new_status = TriggerStatus(normalize(status))
        except ValueError as exc:
            raise ValidationError("status must be one of recorded, queued, blocked") from exc
        with self._lock:
            trigger = self._find_locked(trigger_id)
            if trigger is None:
                return None
            trigger.status = new_status
            trigger.job_id = (job_id or "").strip()
            trigger.enqueue_error = (enqueue_error or "").strip()
            return trigger.clone()

    def get(self, trigger_id: str) -> ConvergeTrigger | None:
        with self._lock:
            trigger = self._find_locked(trigger_id)
            return trigger.clone() if trigger is not None else None

    def list(self, limit: int = 0) -> list[ConvergeTrigger]:
        """Newest first, at most *limit* entries when positive."""

        with self._lock:
            items = [item.clone() for item in self._items]
        items.reverse()
        if limit > 0:
            items = items[:limit]
        return items

    def _find_locked(self, trigger_id: str) -> ConvergeTrigger | None:
        trigger_id = (trigger_id or "").strip()
        for item in self._items:
            if item.id == trigger_id:
                return item
        return None


__all__ = ["ConvergeTrigger", "ConvergeTriggerStore", "TriggerSource", "TriggerStatus"]
