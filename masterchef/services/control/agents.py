"""Agent check-in scheduling and dispatch bookkeeping."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from masterchef.foundation.common.hashutils import fnv32a
from masterchef.foundation.common.ids import IDAllocator
from masterchef.foundation.common.strings import normalize, normalize_priority
from masterchef.foundation.common.timeutils import Clock, utc_now

from .errors import ValidationError
from .storage import BoundedRing, KeyedStore, Record, dataclass_to_dict

logger = logging.getLogger(__name__)

DEFAULT_CHECKIN_INTERVAL = 300
DEFAULT_DISPATCH_HISTORY = 2000


def compute_splay(agent_id: str, max_splay_seconds: int) -> int:
    """Deterministic per-agent offset in ``[0, max_splay_seconds]``."""

    if max_splay_seconds <= 0:
        return 0
    return fnv32a(normalize(agent_id)) % (max_splay_seconds + 1)


@dataclass
class AgentCheckin(Record):
    agent_id: str
    interval_seconds: int
    max_splay_seconds: int
    applied_splay_seconds: int
    last_checkin_at: datetime
    next_checkin_at: datetime
    checkin_count: int = 1
    version: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AgentCheckinStore:
    """Latest check-in per agent; one record per lowercased agent id."""

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._checkins: KeyedStore[AgentCheckin] = KeyedStore(
            "checkin",
            clock=clock,
            natural_key=lambda item: item.agent_id.lower(),
            sort_key=lambda item: item.agent_id.lower(),
            reverse=False,
        )

    def checkin(
        self,
        agent_id: str,
        *,
        interval_seconds: int = 0,
        max_splay_seconds: int = 0,
        version: str = "",
        metadata: dict[str, str] | None = None,
    ) -> AgentCheckin:
        agent_id = (agent_id or "").strip()
        if not agent_id:
            raise ValidationError("agent_id is required")
        if max_splay_seconds < 0:
            raise ValidationError("max_splay_seconds must be >= 0")
        interval = interval_seconds if interval_seconds > 0 else DEFAULT_CHECKIN_INTERVAL
        splay = compute_splay(agent_id, max_splay_seconds)
        with self._checkins.lock:
            now = self._clock()
            previous = self._checkins.find(lambda item: item.agent_id.lower() == agent_id.lower())
            record = AgentCheckin(
                agent_id=agent_id,
                interval_seconds=interval,
                max_splay_seconds=max_splay_seconds,
                applied_splay_seconds=splay,
                last_checkin_at=now,
                next_checkin_at=now + timedelta(seconds=interval + splay),
                checkin_count=(previous.checkin_count + 1) if previous is not None else 1,
                version=(version or "").strip(),
                metadata={str(k): str(v) for k, v in (metadata or {}).items()},
            )
            stored = self._checkins.upsert(record, now=now)
        logger.debug(
            "agent %s checked in; next at %s (splay %ss)", agent_id, stored.next_checkin_at, splay
        )
        return stored

    def get(self, agent_id: str) -> AgentCheckin | None:
        key = normalize(agent_id)
        return self._checkins.find(lambda item: item.agent_id.lower() == key)

    def list(self) -> list[AgentCheckin]:
        return self._checkins.list()


class DispatchMode(StrEnum):
    LOCAL = "local"
    EVENT_BUS = "event_bus"


class DispatchStrategy(StrEnum):
    PUSH = "push"
    PULL = "pull"
    HYBRID = "hybrid"


def normalize_dispatch_strategy(raw: str | None) -> DispatchStrategy:
    try:
        return DispatchStrategy(normalize(raw))
    except ValueError as exc:
        raise ValidationError("strategy must be push, pull, or hybrid") from exc


@dataclass
class EnvironmentStrategy:
    environment: str
    strategy: DispatchStrategy
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = dataclass_to_dict(self)
        if self.updated_at is None:
            payload.pop("updated_at")
        return payload


@dataclass
class DispatchRecord(Record):
    id: str
    mode: str
    strategy: DispatchStrategy
    config_path: str
    status: str
    environment: str = ""
    priority: str = "normal"
    force: bool = False
    job_id: str = ""
    created_at: datetime | None = None


class AgentDispatchStore:
    """Dispatch mode, per-environment strategy and a bounded dispatch log."""

    def __init__(self, *, history_limit: int = DEFAULT_DISPATCH_HISTORY, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._mode = DispatchMode.LOCAL
        self._strategies: dict[str, EnvironmentStrategy] = {}
        self._ids = IDAllocator("dispatch")
        self._records: BoundedRing[DispatchRecord] = BoundedRing(
            history_limit if history_limit > 0 else DEFAULT_DISPATCH_HISTORY
        )

    def mode(self) -> DispatchMode:
        with self._lock:
            return self._mode

    def set_mode(self, mode: str) -> DispatchMode:
        try:
            value = DispatchMode(normalize(mode))
        except ValueError as exc:
            raise ValidationError("mode must be local or event_bus") from exc
        with self._lock:
            self._mode = value
        logger.info("agent dispatch mode set to %s", value)
        return value

    def set_environment_strategy(self, environment: str, strategy: str) -> EnvironmentStrategy:
        environment = (environment or "").strip()
        if not environment:
            raise ValidationError("environment is required")
        item = EnvironmentStrategy(
            environment=environment,
            strategy=normalize_dispatch_strategy(strategy),
            updated_at=self._clock(),
        )
        with self._lock:
            self._strategies[environment] = item
            return EnvironmentStrategy(item.environment, item.strategy, item.updated_at)

    def get_environment_strategy(self, environment: str) -> EnvironmentStrategy | None:
        with self._lock:
            item = self._strategies.get((environment or "").strip())
            if item is None:
                return None
            return EnvironmentStrategy(item.environment, item.strategy, item.updated_at)

    def effective_strategy(self, environment: str) -> EnvironmentStrategy:
        """Configured strategy for *environment*, falling back to ``hybrid``."""

        environment = (environment or "").strip() or "default"
        found = self.get_environment_strategy(environment)
        if found is not None:
            return found
        return EnvironmentStrategy(environment=environment, strategy=DispatchStrategy.HYBRID)

    def list_environment_strategies(self) -> list[EnvironmentStrategy]:
        with self._lock:
            items = [
                EnvironmentStrategy(item.environment, item.strategy, item.updated_at)
                for item in self._strategies.values()
            ]
        return sorted(items, key=lambda item: item.environment)

    def record(
        self,
        *,
        mode: str,
        strategy: str,
        config_path: str,
        status: str,
        environment: str = "",
        priority: str = "",
        force: bool = False,
        job_id: str = "",
    ) -> DispatchRecord:
        try:
            resolved = normalize_dispatch_strategy(strategy)
        except ValidationError:
            resolved = DispatchStrategy.HYBRID
        with self._lock:
            item = DispatchRecord(
                id=self._ids.next(),
                mode=normalize(mode),
                strategy=resolved,
                environment=(environment or "").strip(),
                config_path=(config_path or "").strip(),
                priority=normalize_priority(priority),
                force=force,
                status=(status or "").strip(),
                job_id=(job_id or "").strip(),
                created_at=self._clock(),
            )
            self._records.append(item)
            return item.clone()

    def list(self, limit: int = 0) -> list[DispatchRecord]:
        """Newest first; ``limit <= 0`` returns everything retained."""

        with self._lock:
            items = [item.clone() for item in self._records]
        items.reverse()
        if limit > 0:
            items = items[:limit]
        return items


__all__ = [
    "AgentCheckin",
    "AgentCheckinStore",
    "AgentDispatchStore",
    "DispatchMode",
    "DispatchRecord",
    "DispatchStrategy",
    "EnvironmentStrategy",
    "compute_splay",
    "normalize_dispatch_strategy",
]
