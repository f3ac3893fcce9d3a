"""Hash-chained, bounded event log with non-blocking subscribers.

Every appended event is sealed with a monotonically increasing index, the
hash of its predecessor and its own hash, so the retained window can be
verified for tampering. The hash covers a canonical JSON rendering whose
byte layout is fixed here:

* keys ``index, time, type, message, fields, prev_hash`` in that order
* compact separators (``,`` and ``:``), UTF-8, non-ASCII left unescaped
* ``time`` in RFC3339 UTC with trailing fractional zeros trimmed
* ``type``, ``message`` and ``prev_hash`` stripped of surrounding whitespace
* ``fields`` with keys sorted at every depth, or ``null`` when empty
"""

from __future__ import annotations

import hashlib
import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from masterchef.foundation.common.clone import deep_clone
from masterchef.foundation.common.timeutils import Clock, format_rfc3339_nano, utc_now

from . import metrics as control_metrics
from .storage import BoundedRing, dataclass_to_dict, to_jsonable

logger = logging.getLogger(__name__)

DEFAULT_EVENT_CAPACITY = 10_000
DEFAULT_SUBSCRIBER_BUFFER = 64
DEFAULT_QUERY_LIMIT = 200


@dataclass
class Event:
    type: str
    message: str = ""
    fields: dict[str, Any] | None = None
    time: datetime | None = None
    index: int = 0
    prev_hash: str = ""
    hash: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "time": format_rfc3339_nano(self.time) if self.time else None,
            "type": self.type,
            "message": self.message,
        }
        if self.index:
            payload["index"] = self.index
        if self.fields:
            payload["fields"] = to_jsonable(self.fields)
        if self.prev_hash:
            payload["prev_hash"] = self.prev_hash
        if self.hash:
            payload["hash"] = self.hash
        return payload


@dataclass
class IntegrityViolation:
    index: int
    reason: str
    expected_hash: str = ""
    actual_hash: str = ""


@dataclass
class IntegrityReport:
    valid: bool
    checked: int
    last_hash: str = ""
    violations: list[IntegrityViolation] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return dataclass_to_dict(self)


@dataclass
class EventQuery:
    since: datetime | None = None
    until: datetime | None = None
    type_prefix: str = ""
    contains: str = ""
    limit: int = DEFAULT_QUERY_LIMIT
    desc: bool = False


class Subscription:
    """Bounded queue fed by the event log.

    When the queue is full new events are dropped for this subscriber only.
    """

    def __init__(self, subscription_id: int, buffer: int) -> None:
        self.id = subscription_id
        self.queue: queue.Queue[Event] = queue.Queue(maxsize=buffer)
        self.closed = False

    def offer(self, event: Event) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            return False
        return True

    def get(self, timeout: float | None = None) -> Event:
        return self.queue.get(timeout=timeout)

    def drain(self) -> list[Event]:
        """Return every event currently buffered without waiting."""

        drained: list[Event] = []
        while True:
            try:
                drained.append(self.queue.get_nowait())
            except queue.Empty:
                return drained


def _canonical_fields(fields: Mapping[str, Any] | None) -> Any:
    if not fields:
        return None
    encoded = json.dumps(to_jsonable(fields), sort_keys=True, ensure_ascii=False, default=str)
    return json.loads(encoded)


def canonical_event_bytes(
    index: int,
    time: datetime,
    event_type: str,
    message: str,
    fields: Mapping[str, Any] | None,
    prev_hash: str,
) -> bytes:
    payload = {
        "index": index,
        "time": format_rfc3339_nano(time),
        "type": (event_type or "").strip(),
        "message": (message or "").strip(),
        "fields": _canonical_fields(fields),
        "prev_hash": (prev_hash or "").strip(),
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_event_hash(
    index: int,
    time: datetime,
    event_type: str,
    message: str,
    fields: Mapping[str, Any] | None,
    prev_hash: str,
) -> str:
    raw = canonical_event_bytes(index, time, event_type, message, fields, prev_hash)
    return "sha256:" + hashlib.sha256(raw).hexdigest()


class EventStore:
    """Append-only event log retaining the newest ``capacity`` events."""

    def __init__(self, capacity: int = DEFAULT_EVENT_CAPACITY, *, clock: Clock = utc_now) -> None:
        if capacity <= 0:
            capacity = DEFAULT_EVENT_CAPACITY
        self._clock = clock
        self._lock = threading.RLock()
        self._events: BoundedRing[Event] = BoundedRing(capacity)
        self._next_index = 0
        self._last_hash = ""
        self._next_subscriber_id = 0
        self._subscribers: dict[int, Subscription] = {}

    @property
    def capacity(self) -> int:
        return self._events.capacity

    def append(self, event: Event) -> Event:
        """Seal *event* into the chain and fan it out to subscribers."""

        with self._lock:
            sealed = self._seal_locked(event)
            self._events.append(sealed)
            subscribers = list(self._subscribers.values())
        control_metrics.events_appended_total.inc()
        for subscriber in subscribers:
            if not subscriber.offer(deep_clone(sealed)):
                control_metrics.event_subscriber_drops_total.inc()
                logger.warning(
                    "dropped event %s for slow subscriber %s", sealed.index, subscriber.id
                )
        return deep_clone(sealed)

    def list(self) -> list[Event]:
        with self._lock:
            return deep_clone(self._events.items())

    def replace(self, items: Iterable[Event] | None) -> None:
        """Discard the log and re-seal *items* as a brand new chain.

        Original indices and hashes are not preserved, so any integrity
        history of the previous chain is lost. Only the newest ``capacity``
        items are kept.
        """

        incoming = list(items or [])[-self.capacity :]
        with self._lock:
            self._events.clear()
            self._next_index = 0
            self._last_hash = ""
            for item in incoming:
                self._events.append(self._seal_locked(item))
        logger.info("event log replaced with %d re-sealed events", len(incoming))

    def query(self, q: EventQuery | None = None) -> list[Event]:
        q = q or EventQuery()
        type_prefix = q.type_prefix.strip().lower()
        contains = q.contains.strip().lower()
        limit = q.limit if q.limit > 0 else DEFAULT_QUERY_LIMIT

        def _matches(item: Event) -> bool:
            if q.since is not None and item.time < q.since:
                return False
            if q.until is not None and item.time > q.until:
                return False
            if type_prefix and not item.type.strip().lower().startswith(type_prefix):
                return False
            if contains and contains not in item.message.lower() and contains not in item.type.lower():
                return False
            return True

        with self._lock:
            ordered = self._events.items()
            if q.desc:
                ordered.reverse()
            out: list[Event] = []
            for item in ordered:
                if not _matches(item):
                    continue
                out.append(deep_clone(item))
                if len(out) >= limit:
                    break
        return out

    def verify_integrity(self) -> IntegrityReport:
        """Recompute the chain over the retained window.

        The first retained event anchors the walk: its index and
        ``prev_hash`` are trusted so that a log which has evicted older
        events still verifies. A log that never overflowed therefore has to
        start at index 1 with an empty ``prev_hash``.
        """

        with self._lock:
            events = self._events.items()
        report = IntegrityReport(valid=True, checked=len(events))
        if not events:
            return report
        first_index = events[0].index if self._events_evicted(events) else 1
        prev_hash = events[0].prev_hash.strip() if first_index > 1 else ""
        for offset, item in enumerate(events):
            if item.index != first_index + offset:
                report.violations.append(
                    IntegrityViolation(index=item.index, reason="event index sequence mismatch")
                )
            if item.prev_hash.strip() != prev_hash:
                report.violations.append(
                    IntegrityViolation(index=item.index, reason="prev_hash mismatch")
                )
            expected = compute_event_hash(
                item.index, item.time, item.type, item.message, item.fields, prev_hash
            )
            if item.hash.strip() != expected:
                report.violations.append(
                    IntegrityViolation(
                        index=item.index,
                        reason="hash mismatch",
                        expected_hash=expected,
                        actual_hash=item.hash,
                    )
                )
            prev_hash = expected
        report.valid = not report.violations
        report.last_hash = prev_hash
        return report

    def subscribe(self, buffer: int = DEFAULT_SUBSCRIBER_BUFFER) -> Subscription:
        if buffer <= 0:
            buffer = DEFAULT_SUBSCRIBER_BUFFER
        with self._lock:
            self._next_subscriber_id += 1
            subscription = Subscription(self._next_subscriber_id, buffer)
            self._subscribers[subscription.id] = subscription
            control_metrics.event_subscribers.set(len(self._subscribers))
        return subscription

    def unsubscribe(self, subscription_id: int) -> bool:
        with self._lock:
            subscription = self._subscribers.pop(subscription_id, None)
            control_metrics.event_subscribers.set(len(self._subscribers))
        if subscription is None:
            return False
        subscription.closed = True
        return True

    def _events_evicted(self, events: list[Event]) -> bool:
        return self._next_index > len(events) and events[0].index > 1

    def _seal_locked(self, event: Event) -> Event:
        sealed = deep_clone(event)
        if sealed.time is None:
            sealed.time = self._clock()
        self._next_index += 1
        sealed.index = self._next_index
        sealed.prev_hash = self._last_hash
        sealed.hash = compute_event_hash(
            sealed.index, sealed.time, sealed.type, sealed.message, sealed.fields, sealed.prev_hash
        )
        self._last_hash = sealed.hash
        return sealed


__all__ = [
    "DEFAULT_EVENT_CAPACITY",
    "Event",
    "EventQuery",
    "EventStore",
    "IntegrityReport",
    "IntegrityViolation",
    "Subscription",
    "canonical_event_bytes",
    "compute_event_hash",
]
