"""Outbound HTTP delivery shared by webhooks and notification routing."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from copy import copy
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Generic, Mapping, TypeVar

import httpx

from masterchef.foundation.common.ids import IDAllocator, id_sequence
from masterchef.foundation.common.timeutils import Clock, utc_now

from . import metrics as control_metrics
from .errors import ValidationError
from .storage import BoundedRing, KeyedStore, Record

logger = logging.getLogger(__name__)

DEFAULT_DELIVERY_HISTORY = 5000
DEFAULT_DELIVERY_LIMIT = 200
DEFAULT_DELIVERY_TIMEOUT = 3.0

SIGNATURE_HEADER = "X-Masterchef-Signature"

DELIVERED = "delivered"
FAILED = "failed"

TargetT = TypeVar("TargetT", bound=Record)
DeliveryT = TypeVar("DeliveryT")


def sign_payload(body: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` HMAC signature of *body*."""

    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def validate_http_url(url: str, subject: str) -> str:
    url = (url or "").strip()
    if not url:
        raise ValidationError(f"{subject} url is required")
    lowered = url.lower()
    if not (lowered.startswith("http://") or lowered.startswith("https://")):
        raise ValidationError(f"{subject} url must be http or https")
    return url


def encode_body(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@dataclass
class DeliveryOutcome:
    status: str
    status_code: int = 0
    error: str = ""


class HttpDispatcher(Generic[TargetT, DeliveryT]):
    """Targets, bounded delivery history and the POST loop.

    Targets are snapshotted under the lock and POSTed with the lock
    released; per-target counters are then updated under the lock. Delivery
    failures are recorded, never raised, and never retried.
    """

    channel = "http"
    target_prefix = "target"
    delivery_prefix = "delivery"
    not_found_reason = "target not found"
    upsert_by_name = False

    def __init__(
        self,
        *,
        history_limit: int = DEFAULT_DELIVERY_HISTORY,
        timeout: float = DEFAULT_DELIVERY_TIMEOUT,
        client: httpx.Client | None = None,
        clock: Clock = utc_now,
    ) -> None:
        if history_limit <= 0:
            history_limit = DEFAULT_DELIVERY_HISTORY
        self._clock = clock
        self._targets: KeyedStore[TargetT] = KeyedStore(
            self.target_prefix,
            clock=clock,
            natural_key=(lambda item: item.name) if self.upsert_by_name else None,  # type: ignore[attr-defined]
            sort_key=lambda item: id_sequence(item.id),  # type: ignore[attr-defined]
            reverse=False,
        )
        self._delivery_ids = IDAllocator(self.delivery_prefix)
        self._deliveries: BoundedRing[DeliveryT] = BoundedRing(history_limit)
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    # ------------------------------------------------------------------
    # Target management
    # ------------------------------------------------------------------
    def get(self, target_id: str) -> TargetT | None:
        return self._targets.get(target_id)

    def list(self) -> list[TargetT]:
        return self._targets.list()

    def delete(self, target_id: str) -> bool:
        return self._targets.delete(target_id)

    def set_enabled(self, target_id: str, enabled: bool) -> TargetT:
        def _toggle(target: TargetT) -> None:
            target.enabled = enabled  # type: ignore[attr-defined]

        return self._targets.mutate(target_id, _toggle, missing=self.not_found_reason)

    def deliveries(self, limit: int = DEFAULT_DELIVERY_LIMIT) -> list[DeliveryT]:
        """Newest *limit* deliveries in the order they were recorded."""

        if limit <= 0:
            limit = DEFAULT_DELIVERY_LIMIT
        with self._targets.lock:
            return [self._copy_delivery(item) for item in self._deliveries.tail(limit)]

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Delivery loop
    # ------------------------------------------------------------------
    def _fan_out(
        self,
        accepts: Callable[[TargetT], bool],
        body: bytes,
        headers_for: Callable[[TargetT], dict[str, str]],
        make_delivery: Callable[[str, TargetT, DeliveryOutcome, datetime], DeliveryT],
    ) -> list[DeliveryT]:
        targets = [
            target
            for target in self._targets.list()
            if target.enabled and accepts(target)  # type: ignore[attr-defined]
        ]
        results: list[DeliveryT] = []
        for target in targets:
            outcome = self._post(target.url, body, headers_for(target))  # type: ignore[attr-defined]
            results.append(self._record(target, outcome, make_delivery))
        return results

    def _post(self, url: str, body: bytes, headers: Mapping[str, str]) -> DeliveryOutcome:
        request_headers = {"Content-Type": "application/json", **headers}
        try:
            response = self._http().post(url, content=body, headers=request_headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("%s delivery to %s failed: %s", self.channel, url, exc)
            return DeliveryOutcome(status=FAILED, error=str(exc) or type(exc).__name__)
        if not 200 <= response.status_code < 300:
            logger.warning(
                "%s delivery to %s returned status %s", self.channel, url, response.status_code
            )
            return DeliveryOutcome(
                status=FAILED, status_code=response.status_code, error="non-2xx status"
            )
        return DeliveryOutcome(status=DELIVERED, status_code=response.status_code)

    def _record(
        self,
        target: TargetT,
        outcome: DeliveryOutcome,
        make_delivery: Callable[[str, TargetT, DeliveryOutcome, datetime], DeliveryT],
    ) -> DeliveryT:
        with self._targets.lock:
            now = self._clock()
            delivery = make_delivery(self._delivery_ids.next(), target, outcome, now)
            stored = self._targets.get_live(target.id)  # type: ignore[attr-defined]
            if stored is not None:
                if outcome.status == DELIVERED:
                    stored.success_count += 1  # type: ignore[attr-defined]
                    stored.last_error = ""  # type: ignore[attr-defined]
                else:
                    stored.failure_count += 1  # type: ignore[attr-defined]
                    stored.last_error = outcome.error  # type: ignore[attr-defined]
                stored.last_delivery = now  # type: ignore[attr-defined]
                stored.updated_at = now  # type: ignore[attr-defined]
            self._deliveries.append(delivery)
        control_metrics.record_delivery(self.channel, outcome.status)
        return self._copy_delivery(delivery)

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout)
            self._owns_client = True
        return self._client

    @staticmethod
    def _copy_delivery(delivery: DeliveryT) -> DeliveryT:
        return copy(delivery)


__all__ = [
    "DEFAULT_DELIVERY_HISTORY",
    "DEFAULT_DELIVERY_TIMEOUT",
    "DELIVERED",
    "DeliveryOutcome",
    "FAILED",
    "HttpDispatcher",
    "SIGNATURE_HEADER",
    "encode_body",
    "sign_payload",
    "validate_http_url",
]
