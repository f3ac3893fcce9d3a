from __future__ import annotations

import json
from datetime import datetime, timezone

from masterchef.services.control import metrics as control_metrics
from masterchef.services.control.events import (
    Event,
    EventQuery,
    EventStore,
    canonical_event_bytes,
    compute_event_hash,
)


def _append_three(store: EventStore) -> list[Event]:
    return [store.append(Event(type=t)) for t in ("t.a", "t.b", "t.c")]


def test_chain_verifies_and_tamper_is_detected(clock) -> None:
    store = EventStore(clock=clock)
    sealed = _append_three(store)

    assert [e.index for e in sealed] == [1, 2, 3]
    assert sealed[0].prev_hash == ""
    assert sealed[1].prev_hash == sealed[0].hash
    assert sealed[2].prev_hash == sealed[1].hash

    report = store.verify_integrity()
    assert report.valid is True
    assert report.checked == 3
    third = sealed[2]
    assert report.last_hash == compute_event_hash(
        3, third.time, third.type, third.message, third.fields, third.prev_hash
    )

    store._events[1].message = "tampered"

    tampered = store.verify_integrity()
    assert tampered.valid is False
    assert any(v.index == 2 and v.reason == "hash mismatch" for v in tampered.violations)


def test_canonical_bytes_layout() -> None:
    when = datetime(2026, 1, 2, 3, 4, 5, 120000, tzinfo=timezone.utc)
    raw = canonical_event_bytes(1, when, " t.a ", "héllo", {"b": 1, "a": {"z": 1, "y": 2}}, "")
    assert raw.decode("utf-8") == (
        '{"index":1,"time":"2026-01-02T03:04:05.12Z","type":"t.a","message":"héllo",'
        '"fields":{"a":{"y":2,"z":1},"b":1},"prev_hash":""}'
    )
    empty = json.loads(canonical_event_bytes(1, when, "t", "", {}, ""))
    assert empty["fields"] is None


def test_eviction_keeps_newest_and_still_verifies(clock) -> None:
    store = EventStore(capacity=3, clock=clock)
    for n in range(5):
        store.append(Event(type=f"t.{n}"))

    events = store.list()
    assert [e.index for e in events] == [3, 4, 5]
    report = store.verify_integrity()
    assert report.valid is True
    assert report.checked == 3


def test_returned_events_are_copies(clock) -> None:
    store = EventStore(clock=clock)
    sealed = store.append(Event(type="t.a", fields={"k": [1]}))
    sealed.fields["k"].append(2)
    assert store.list()[0].fields == {"k": [1]}


def test_query_filters_and_orders(clock) -> None:
    store = EventStore(clock=clock)
    store.append(Event(type="deploy.start", message="Rolling web"))
    clock.advance(10)
    store.append(Event(type="deploy.finish", message="web done"))
    clock.advance(10)
    store.append(Event(type="alert.fired", message="disk"))

    assert [e.type for e in store.query(EventQuery(type_prefix="DEPLOY."))] == [
        "deploy.start",
        "deploy.finish",
    ]
    assert [e.type for e in store.query(EventQuery(contains="WEB", desc=True))] == [
        "deploy.finish",
        "deploy.start",
    ]
    assert len(store.query(EventQuery(limit=1))) == 1
    since = store.query(EventQuery(since=clock.now))
    assert [e.type for e in since] == ["alert.fired"]


def test_replace_reseals_a_new_chain(clock) -> None:
    store = EventStore(clock=clock)
    original = _append_three(store)

    store.replace([Event(type="x.1", time=clock.now), Event(type="x.2", time=clock.now)])

    events = store.list()
    assert [e.index for e in events] == [1, 2]
    assert events[0].hash != original[0].hash
    assert store.verify_integrity().valid is True
    assert store.append(Event(type="x.3")).index == 3


def test_slow_subscriber_drops_without_blocking(clock) -> None:
    store = EventStore(clock=clock)
    subscription = store.subscribe(buffer=2)
    for n in range(4):
        store.append(Event(type=f"t.{n}"))

    received = subscription.drain()
    assert [e.type for e in received] == ["t.0", "t.1"]
    assert control_metrics.get_metric_value(control_metrics.event_subscriber_drops_total) == 2.0
    assert control_metrics.get_metric_value(control_metrics.events_appended_total) == 4.0

    assert store.unsubscribe(subscription.id) is True
    assert store.unsubscribe(subscription.id) is False
    store.append(Event(type="after"))
    assert subscription.drain() == []


def test_to_dict_renders_hash_fields(clock) -> None:
    store = EventStore(clock=clock)
    payload = store.append(Event(type="t.a", message="m", fields={"n": 1})).to_dict()
    assert payload["time"] == "2026-01-02T03:04:05Z"
    assert payload["index"] == 1
    assert payload["fields"] == {"n": 1}
    assert payload["hash"].startswith("sha256:")
    assert "prev_hash" not in payload
