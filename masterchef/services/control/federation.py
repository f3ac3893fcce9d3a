"""Federated control-plane peers and their health matrix."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from masterchef.foundation.common.strings import normalize
from masterchef.foundation.common.timeutils import Clock, utc_now

from .errors import ValidationError
from .storage import KeyedStore, Record

DEFAULT_PEER_WEIGHT = 100
DEFAULT_PEER_LATENCY_MS = 25


class FederationMode(StrEnum):
    ACTIVE_ACTIVE = "active_active"
    ACTIVE_PASSIVE = "active_passive"


@dataclass
class FederationPeer(Record):
    region: str
    endpoint: str
    mode: FederationMode
    weight: int = DEFAULT_PEER_WEIGHT
    healthy: bool = True
    latency_ms: int = DEFAULT_PEER_LATENCY_MS
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class FederationHealthRow(Record):
    region: str
    mode: FederationMode
    healthy: bool
    latency_ms: int


@dataclass
class FederationHealthMatrix(Record):
    generated_at: datetime
    rows: list[FederationHealthRow] = field(default_factory=list)
    healthy: bool = True


class FederationStore:
    """Peers are listed, not coordinated; health is whatever was last reported."""

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._peers: KeyedStore[FederationPeer] = KeyedStore(
            "federation-peer",
            clock=clock,
            sort_key=lambda peer: peer.region,
            reverse=False,
        )

    def upsert_peer(self, *, region: str, endpoint: str, mode: str, weight: int = 0) -> FederationPeer:
        region = normalize(region)
        endpoint = (endpoint or "").strip()
        try:
            peer_mode = FederationMode(normalize(mode))
        except ValueError:
            peer_mode = None
        if not region or not endpoint or peer_mode is None:
            raise ValidationError("region, endpoint, and mode are required")
        return self._peers.create(
            FederationPeer(
                region=region,
                endpoint=endpoint,
                mode=peer_mode,
                weight=weight if weight > 0 else DEFAULT_PEER_WEIGHT,
            )
        )

    def get_peer(self, peer_id: str) -> FederationPeer | None:
        return self._peers.get(peer_id)

    def list_peers(self) -> list[FederationPeer]:
        return self._peers.list()

    def set_peer_health(self, peer_id: str, healthy: bool, latency_ms: int = 0) -> FederationPeer:
        def _report(peer: FederationPeer) -> None:
            peer.healthy = healthy
            peer.latency_ms = max(latency_ms, 0)

        return self._peers.mutate(peer_id, _report, missing="federation peer not found")

    def health_matrix(self) -> FederationHealthMatrix:
        rows = [
            FederationHealthRow(
                region=peer.region, mode=peer.mode, healthy=peer.healthy, latency_ms=peer.latency_ms
            )
            for peer in self.list_peers()
        ]
        return FederationHealthMatrix(
            generated_at=self._clock(),
            rows=rows,
            healthy=all(row.healthy for row in rows),
        )


__all__ = [
    "FederationHealthMatrix",
    "FederationHealthRow",
    "FederationMode",
    "FederationPeer",
    "FederationStore",
]
