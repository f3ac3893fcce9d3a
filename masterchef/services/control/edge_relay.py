"""Edge relay sites and their store-and-forward message queues."""

from __future__ import annotations

import logging
import threading
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from masterchef.foundation.common.hashutils import hash_bytes
from masterchef.foundation.common.ids import id_sequence
from masterchef.foundation.common.strings import normalize
from masterchef.foundation.common.timeutils import Clock, utc_now

from .errors import ConflictError, NotFoundError, ValidationError
from .storage import ExpiryRule, KeyedStore, Record, dataclass_to_dict, sweep_expired

logger = logging.getLogger(__name__)

DEFAULT_MAX_QUEUE_DEPTH = 1000
DEFAULT_HEARTBEAT_INTERVAL = 60
DEFAULT_MESSAGE_TTL_SECONDS = 3600
DEFAULT_DELIVERY_BATCH = 100
DIRECTIONS = ("ingress", "egress")


class RelayMode(StrEnum):
    STORE_AND_FORWARD = "store_and_forward"
    PASSTHROUGH = "passthrough"


class MessageStatus(StrEnum):
    QUEUED = "queued"
    DELIVERED = "delivered"
    EXPIRED = "expired"


_MESSAGE_EXPIRY = ExpiryRule(
    expirable=frozenset({MessageStatus.QUEUED}), terminal=MessageStatus.EXPIRED
)


@dataclass
class EdgeRelaySite(Record):
    site_id: str
    region: str
    mode: RelayMode
    max_queue_depth: int
    heartbeat_interval_seconds: int
    connected: bool = True
    queue_depth: int = 0
    last_seen_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class EdgeRelayMessage(Record):
    site_id: str
    direction: str
    checksum: str
    size_bytes: int
    expires_at: datetime
    status: MessageStatus = MessageStatus.QUEUED
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    delivered_at: datetime | None = None


@dataclass
class RelayDeliveryResult:
    site_id: str
    requested_limit: int
    delivered: int
    remaining: int

    def to_dict(self) -> dict[str, Any]:
        return dataclass_to_dict(self)


def message_checksum(site_id: str, direction: str, payload: str) -> str:
    return hash_bytes(f"{site_id}|{direction}|{payload}")


class EdgeRelayStore:
    """Sites by id and the messages queued for them.

    Queued messages past their TTL are marked expired and dropped on the
    next read or delivery.
    """

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._sites: dict[str, EdgeRelaySite] = {}
        self._messages: KeyedStore[EdgeRelayMessage] = KeyedStore(
            "relay-msg", clock=clock, lock=self._lock
        )

    # ------------------------------------------------------------------
    # Sites
    # ------------------------------------------------------------------
    def upsert_site(
        self,
        *,
        site_id: str,
        mode: str,
        region: str = "",
        max_queue_depth: int = 0,
        heartbeat_interval_seconds: int = 0,
    ) -> EdgeRelaySite:
        site_id = (site_id or "").strip()
        if not site_id:
            raise ValidationError("site_id is required")
        try:
            relay_mode = RelayMode(normalize(mode))
        except ValueError as exc:
            raise ValidationError("mode must be store_and_forward or passthrough") from exc
        with self._lock:
            now = self._clock()
            site = self._sites.get(site_id)
            if site is None:
                site = EdgeRelaySite(
                    site_id=site_id,
                    region="",
                    mode=relay_mode,
                    max_queue_depth=0,
                    heartbeat_interval_seconds=0,
                    last_seen_at=now,
                )
                self._sites[site_id] = site
            site.region = (region or "").strip() or "global"
            site.mode = relay_mode
            site.max_queue_depth = max_queue_depth if max_queue_depth > 0 else DEFAULT_MAX_QUEUE_DEPTH
            site.heartbeat_interval_seconds = (
                heartbeat_interval_seconds if heartbeat_interval_seconds > 0 else DEFAULT_HEARTBEAT_INTERVAL
            )
            site.updated_at = now
            return self._site_snapshot_locked(site)

    def heartbeat(self, site_id: str) -> EdgeRelaySite:
        site_id = (site_id or "").strip()
        if not site_id:
            raise ValidationError("site_id is required")
        with self._lock:
            site = self._require_site_locked(site_id)
            now = self._clock()
            site.connected = True
            site.last_seen_at = now
            site.updated_at = now
            return self._site_snapshot_locked(site)

    def get_site(self, site_id: str) -> EdgeRelaySite | None:
        with self._lock:
            site = self._sites.get((site_id or "").strip())
            return self._site_snapshot_locked(site) if site is not None else None

    def list_sites(self) -> list[EdgeRelaySite]:
        with self._lock:
            sites = [self._site_snapshot_locked(site) for site in self._sites.values()]
        return sorted(sites, key=lambda site: (site.region, site.site_id))

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def queue_message(
        self, *, site_id: str, direction: str, payload: str, ttl_seconds: int = 0
    ) -> EdgeRelayMessage:
        site_id = (site_id or "").strip()
        direction = normalize(direction)
        if not site_id or not direction:
            raise ValidationError("site_id and direction are required")
        if direction not in DIRECTIONS:
            raise ValidationError("direction must be ingress or egress")
        payload = payload or ""
        ttl = ttl_seconds if ttl_seconds > 0 else DEFAULT_MESSAGE_TTL_SECONDS
        with self._lock:
            now = self._clock()
            site = self._require_site_locked(site_id)
            self._purge_locked(now)
            if site.max_queue_depth > 0 and self._depth_locked(site_id) >= site.max_queue_depth:
                raise ConflictError("relay queue is full for site")
            message = self._messages.create(
                EdgeRelayMessage(
                    site_id=site_id,
                    direction=direction,
                    checksum=message_checksum(site_id, direction, payload),
                    size_bytes=len(payload.encode("utf-8")),
                    expires_at=now + timedelta(seconds=ttl),
                ),
                now=now,
            )
            site.updated_at = now
        logger.debug("relay message %s queued for %s (%s)", message.id, site_id, direction)
        return message

    def deliver(self, site_id: str, limit: int = 0) -> RelayDeliveryResult:
        """Mark up to *limit* queued messages for *site_id* delivered, oldest first."""

        site_id = (site_id or "").strip()
        if not site_id:
            raise ValidationError("site_id is required")
        limit = limit if limit > 0 else DEFAULT_DELIVERY_BATCH
        with self._lock:
            now = self._clock()
            site = self._require_site_locked(site_id)
            self._purge_locked(now)
            pending = sorted(
                (
                    msg
                    for msg in self._messages.live()
                    if msg.site_id == site_id and msg.status == MessageStatus.QUEUED
                ),
                key=lambda msg: id_sequence(msg.id),
            )
            batch = pending[:limit]
            for msg in batch:
                msg.status = MessageStatus.DELIVERED
                msg.delivered_at = now
                msg.updated_at = now
            site.updated_at = now
            remaining = self._depth_locked(site_id)
        return RelayDeliveryResult(
            site_id=site_id, requested_limit=limit, delivered=len(batch), remaining=remaining
        )

    def list_messages(self, site_id: str = "", limit: int = 0) -> list[EdgeRelayMessage]:
        site_id = (site_id or "").strip()
        with self._lock:
            self._purge_locked(self._clock())
            items = self._messages.list(lambda msg: not site_id or msg.site_id == site_id)
        if limit > 0:
            items = items[:limit]
        return items

    def _purge_locked(self, now: datetime) -> None:
        expired = sweep_expired(self._messages.live(), now, _MESSAGE_EXPIRY)
        if expired:
            logger.warning("dropped %d undelivered relay messages past their ttl", len(expired))
        for msg in self._messages.live():
            if msg.expires_at <= now:
                self._messages.delete(msg.id)

    def _depth_locked(self, site_id: str) -> int:
        return sum(
            1
            for msg in self._messages.live()
            if msg.site_id == site_id and msg.status == MessageStatus.QUEUED
        )

    def _require_site_locked(self, site_id: str) -> EdgeRelaySite:
        site = self._sites.get(site_id)
        if site is None:
            raise NotFoundError("site not found")
        return site

    def _site_snapshot_locked(self, site: EdgeRelaySite) -> EdgeRelaySite:
        snapshot = deepcopy(site)
        snapshot.queue_depth = self._depth_locked(site.site_id)
        return snapshot


__all__ = [
    "EdgeRelayMessage",
    "EdgeRelaySite",
    "EdgeRelayStore",
    "MessageStatus",
    "RelayDeliveryResult",
    "RelayMode",
    "message_checksum",
]
