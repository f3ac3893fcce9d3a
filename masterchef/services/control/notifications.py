"""Alert notification routing to chatops, incident and ticket targets."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import StrEnum
from typing import Any, Mapping

from .delivery import DeliveryOutcome, HttpDispatcher, encode_body, validate_http_url
from .errors import ValidationError
from .storage import Record

KIND_HEADER = "X-Masterchef-Notification-Kind"
ROUTE_HEADER = "X-Masterchef-Alert-Route"
ALERT_NOTIFICATION_TYPE = "alert.notification"


class NotificationKind(StrEnum):
    CHATOPS = "chatops"
    INCIDENT = "incident"
    TICKET = "ticket"


class NotificationRoute(StrEnum):
    PAGER = "pager"
    TICKET = "ticket"
    CHATOPS = "chatops"
    DIGEST = "digest"
    ANY = "*"


@dataclass
class AlertItem(Record):
    id: str
    fingerprint: str = ""
    event_type: str = ""
    message: str = ""
    severity: str = ""
    route: str = ""
    count: int = 0
    suppressed_count: int = 0
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None
    status: str = "open"
    fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: "AlertItem | Mapping[str, Any]") -> "AlertItem":
        if isinstance(value, AlertItem):
            return value
        known = {item.name for item in fields(cls)}
        return cls(**{key: val for key, val in value.items() if key in known})


@dataclass
class NotificationTarget(Record):
    name: str
    kind: NotificationKind
    url: str
    route: NotificationRoute
    enabled: bool = True
    success_count: int = 0
    failure_count: int = 0
    last_error: str = ""
    last_delivery: datetime | None = None
    id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class NotificationDelivery(Record):
    id: str
    target_id: str
    alert_id: str
    alert_route: str
    status: str
    delivered_at: datetime
    status_code: int = 0
    error: str = ""


class NotificationRouter(HttpDispatcher[NotificationTarget, NotificationDelivery]):
    """Delivers alerts to targets whose route equals the alert's or is ``*``."""

    channel = "notification"
    target_prefix = "notify"
    delivery_prefix = "notify-del"
    not_found_reason = "notification target not found"

    def register(
        self, *, name: str, kind: str, url: str, route: str, enabled: bool = True
    ) -> NotificationTarget:
        name = (name or "").strip()
        if not name:
            raise ValidationError("notification target name is required")
        url = validate_http_url(url, "notification target")
        try:
            target_kind = NotificationKind((kind or "").strip().lower())
        except ValueError as exc:
            raise ValidationError("notification kind must be chatops, incident, or ticket") from exc
        try:
            target_route = NotificationRoute((route or "").strip().lower())
        except ValueError as exc:
            raise ValidationError(
                "notification route must be pager, ticket, chatops, digest, or *"
            ) from exc
        target = NotificationTarget(
            name=name, kind=target_kind, url=url, route=target_route, enabled=enabled
        )
        return self._targets.create(target)

    def notify_alert(self, alert: AlertItem | Mapping[str, Any]) -> list[NotificationDelivery]:
        item = AlertItem.coerce(alert)
        body = encode_body({"type": ALERT_NOTIFICATION_TYPE, "alert": item.to_dict()})

        def _accepts(target: NotificationTarget) -> bool:
            return target.route == NotificationRoute.ANY or target.route == item.route

        def _headers(target: NotificationTarget) -> dict[str, str]:
            return {KIND_HEADER: str(target.kind), ROUTE_HEADER: item.route}

        def _delivery(
            delivery_id: str, target: NotificationTarget, outcome: DeliveryOutcome, now: datetime
        ) -> NotificationDelivery:
            return NotificationDelivery(
                id=delivery_id,
                target_id=target.id,
                alert_id=item.id,
                alert_route=item.route,
                status=outcome.status,
                status_code=outcome.status_code,
                error=outcome.error,
                delivered_at=now,
            )

        return self._fan_out(_accepts, body, _headers, _delivery)


__all__ = [
    "ALERT_NOTIFICATION_TYPE",
    "AlertItem",
    "KIND_HEADER",
    "NotificationDelivery",
    "NotificationKind",
    "NotificationRoute",
    "NotificationRouter",
    "NotificationTarget",
    "ROUTE_HEADER",
]
