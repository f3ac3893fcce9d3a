from __future__ import annotations

import pytest

from masterchef.services.control.edge_relay import (
    EdgeRelayStore,
    MessageStatus,
    RelayMode,
    message_checksum,
)
from masterchef.services.control.errors import ConflictError, NotFoundError, ValidationError


def test_upsert_site_applies_defaults(clock) -> None:
    store = EdgeRelayStore(clock=clock)
    site = store.upsert_site(site_id="edge-1", mode="Store_And_Forward")
    assert site.mode == RelayMode.STORE_AND_FORWARD
    assert site.region == "global"
    assert site.max_queue_depth == 1000
    assert site.heartbeat_interval_seconds == 60

    store.upsert_site(site_id="edge-0", mode="passthrough", region="eu")
    assert [s.site_id for s in store.list_sites()] == ["edge-0", "edge-1"]

    with pytest.raises(ValidationError, match="mode must be store_and_forward or passthrough"):
        store.upsert_site(site_id="edge-2", mode="carrier")
    with pytest.raises(NotFoundError, match="site not found"):
        store.heartbeat("edge-9")

    clock.advance(30)
    assert store.heartbeat("edge-1").last_seen_at == clock.now


def test_queue_and_deliver_oldest_first(clock) -> None:
    store = EdgeRelayStore(clock=clock)
    store.upsert_site(site_id="edge-1", mode="store_and_forward", max_queue_depth=3)

    queued = [
        store.queue_message(site_id="edge-1", direction="Egress", payload=f"m{n}") for n in range(3)
    ]
    assert queued[0].checksum == message_checksum("edge-1", "egress", "m0")
    assert queued[0].size_bytes == 2
    assert store.get_site("edge-1").queue_depth == 3
    with pytest.raises(ConflictError, match="relay queue is full for site"):
        store.queue_message(site_id="edge-1", direction="egress", payload="m3")

    result = store.deliver("edge-1", limit=2)
    assert (result.delivered, result.remaining, result.requested_limit) == (2, 1, 2)
    statuses = {msg.id: msg.status for msg in store.list_messages("edge-1")}
    assert statuses[queued[0].id] == MessageStatus.DELIVERED
    assert statuses[queued[1].id] == MessageStatus.DELIVERED
    assert statuses[queued[2].id] == MessageStatus.QUEUED

    with pytest.raises(ValidationError, match="direction must be ingress or egress"):
        store.queue_message(site_id="edge-1", direction="sideways", payload="")


def test_expired_messages_are_dropped(clock) -> None:
    store = EdgeRelayStore(clock=clock)
    store.upsert_site(site_id="edge-1", mode="store_and_forward")
    store.queue_message(site_id="edge-1", direction="ingress", payload="old", ttl_seconds=10)
    clock.advance(5)
    fresh = store.queue_message(site_id="edge-1", direction="ingress", payload="new", ttl_seconds=60)

    clock.advance(5)
    assert [msg.id for msg in store.list_messages()] == [fresh.id]
    result = store.deliver("edge-1")
    assert result.requested_limit == 100
    assert result.delivered == 1
    assert result.remaining == 0
