from __future__ import annotations

import json

import httpx
import pytest

from masterchef.services.control.errors import ValidationError
from masterchef.services.control.notifications import (
    ALERT_NOTIFICATION_TYPE,
    KIND_HEADER,
    ROUTE_HEADER,
    AlertItem,
    NotificationKind,
    NotificationRouter,
)


def test_routes_alerts_to_matching_and_wildcard_targets(clock) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(202)

    router = NotificationRouter(client=httpx.Client(transport=httpx.MockTransport(handler)), clock=clock)
    pager = router.register(name="pagerduty", kind="incident", url="https://pd.local", route="pager")
    router.register(name="tickets", kind="ticket", url="https://jira.local", route="ticket")
    everything = router.register(name="chat", kind="ChatOps", url="https://chat.local", route="*")

    deliveries = router.notify_alert(
        {"id": "alert-1", "route": "pager", "message": "disk full", "count": 3, "unknown": "x"}
    )

    assert sorted(d.target_id for d in deliveries) == sorted([pager.id, everything.id])
    assert all(d.status == "delivered" and d.status_code == 202 for d in deliveries)
    assert all(d.alert_route == "pager" for d in deliveries)
    body = json.loads(requests[0].content)
    assert body["type"] == ALERT_NOTIFICATION_TYPE
    assert body["alert"]["message"] == "disk full"
    assert requests[0].headers[ROUTE_HEADER] == "pager"
    kinds = {request.headers[KIND_HEADER] for request in requests}
    assert kinds == {"incident", "chatops"}
    assert router.get(everything.id).kind is NotificationKind.CHATOPS


def test_targets_list_in_registration_order(clock) -> None:
    router = NotificationRouter(clock=clock)
    a = router.register(name="a", kind="ticket", url="http://a.local", route="ticket")
    b = router.register(name="a", kind="ticket", url="http://b.local", route="ticket")
    assert a.id != b.id
    assert [t.id for t in router.list()] == [a.id, b.id]
    router.close()


def test_register_validation(clock) -> None:
    router = NotificationRouter(clock=clock)
    with pytest.raises(ValidationError, match="notification kind must be"):
        router.register(name="x", kind="sms", url="http://a", route="pager")
    with pytest.raises(ValidationError, match="notification route must be"):
        router.register(name="x", kind="ticket", url="http://a", route="email")
    with pytest.raises(ValidationError, match="notification target url is required"):
        router.register(name="x", kind="ticket", url="", route="pager")


def test_alert_item_round_trips_through_dict() -> None:
    item = AlertItem.coerce({"id": "a-1", "route": "digest", "severity": "low"})
    payload = item.to_dict()
    assert payload["id"] == "a-1"
    assert "first_seen_at" not in payload
    assert AlertItem.coerce(item) is item
