"""Webhook subscriptions filtered by event-type prefix."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .delivery import (
    SIGNATURE_HEADER,
    DeliveryOutcome,
    HttpDispatcher,
    encode_body,
    sign_payload,
    validate_http_url,
)
from .errors import ValidationError
from .events import Event
from .storage import Record

EVENT_TYPE_HEADER = "X-Masterchef-Event-Type"


@dataclass
class WebhookSubscription(Record):
    name: str
    url: str
    event_prefix: str
    enabled: bool = True
    secret: str = ""
    success_count: int = 0
    failure_count: int = 0
    last_error: str = ""
    last_delivery: datetime | None = None
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class WebhookDelivery(Record):
    id: str
    webhook_id: str
    event_type: str
    status: str
    delivered_at: datetime
    status_code: int = 0
    error: str = ""


class WebhookDispatcher(HttpDispatcher[WebhookSubscription, WebhookDelivery]):
    """POSTs events to every enabled subscription whose prefix matches.

    Subscriptions are keyed by name: registering an existing name updates
    it in place and keeps its identifier and delivery counters.
    """

    channel = "webhook"
    target_prefix = "wh"
    delivery_prefix = "whdel"
    not_found_reason = "webhook not found"
    upsert_by_name = True

    def register(
        self,
        *,
        name: str,
        url: str,
        event_prefix: str,
        secret: str = "",
        enabled: bool = True,
    ) -> WebhookSubscription:
        name = (name or "").strip()
        if not name:
            raise ValidationError("webhook name is required")
        url = validate_http_url(url, "webhook")
        event_prefix = (event_prefix or "").strip()
        if not event_prefix:
            raise ValidationError("event_prefix is required")
        subscription = WebhookSubscription(
            name=name,
            url=url,
            event_prefix=event_prefix,
            enabled=enabled,
            secret=(secret or "").strip(),
        )
        with self._targets.lock:
            existing = self._targets.find(lambda item: item.name == name)
            if existing is not None:
                subscription.success_count = existing.success_count
                subscription.failure_count = existing.failure_count
                subscription.last_error = existing.last_error
                subscription.last_delivery = existing.last_delivery
            return self._targets.upsert(subscription)

    def dispatch(self, event: Event) -> list[WebhookDelivery]:
        body = encode_body(event.to_dict())

        def _headers(target: WebhookSubscription) -> dict[str, str]:
            headers = {EVENT_TYPE_HEADER: event.type}
            if target.secret:
                headers[SIGNATURE_HEADER] = sign_payload(body, target.secret)
            return headers

        def _delivery(
            delivery_id: str, target: WebhookSubscription, outcome: DeliveryOutcome, now: datetime
        ) -> WebhookDelivery:
            return WebhookDelivery(
                id=delivery_id,
                webhook_id=target.id,
                event_type=event.type,
                status=outcome.status,
                status_code=outcome.status_code,
                error=outcome.error,
                delivered_at=now,
            )

        return self._fan_out(
            lambda target: event.type.startswith(target.event_prefix), body, _headers, _delivery
        )


__all__ = ["EVENT_TYPE_HEADER", "WebhookDelivery", "WebhookDispatcher", "WebhookSubscription"]
