from __future__ import annotations

import json
import logging

import httpx

from masterchef.foundation.config import ControlPlaneConfig, load_control_plane_config
from masterchef.services.control import ControlPlane


def _config(tmp_path, **events) -> ControlPlaneConfig:
    return load_control_plane_config(
        {
            "events": events or None,
            "encrypted_vars": {"base_dir": str(tmp_path)},
            "variables": {"base_dir": str(tmp_path)},
        }
    )


def test_from_config_wires_every_store(tmp_path, clock, caplog) -> None:
    config = _config(tmp_path, capacity=5, subscriber_buffer=1)
    with caplog.at_level(logging.INFO, logger="masterchef.services.control.plane"):
        plane = ControlPlane.from_config(config, clock=clock)
    with plane:
        assert "control plane ready" in caplog.text
        assert plane.config is config
        assert plane.encrypted_vars.root.is_relative_to(tmp_path)

        for n in range(7):
            plane.publish(f"t.{n}")
        assert [e.index for e in plane.events.query()] == [3, 4, 5, 6, 7]
        assert plane.events.verify_integrity().valid is True

        subscription = plane.subscribe()
        plane.publish("a.one")
        plane.publish("a.two")
        assert [e.type for e in subscription.drain()] == ["a.one"]


def test_publish_seals_then_dispatches_webhooks(tmp_path, clock) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with ControlPlane(_config(tmp_path), clock=clock, http_client=client) as plane:
        plane.webhooks.register(name="deploys", url="https://hooks.local/d", event_prefix="deploy.")

        event, deliveries = plane.publish("deploy.finished", "ok", {"run": "r-1"})
        assert event.index == 1
        assert event.hash
        assert [d.status for d in deliveries] == ["delivered"]
        assert json.loads(seen[0].content)["fields"] == {"run": "r-1"}

        _, none = plane.publish("audit.read")
        assert none == []
        assert [e.type for e in plane.events.query()] == ["deploy.finished", "audit.read"]
