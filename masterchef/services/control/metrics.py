"""Prometheus metrics for control-plane stores and dispatchers."""

from __future__ import annotations

from masterchef.foundation.common.metrics_factory import (
    get_metric_value,
    get_or_create_counter,
    get_or_create_gauge,
    reset_metrics as reset_registered_metrics,
)

_REGISTERED_METRICS: set[str] = set()


def _counter(name: str, documentation: str, labelnames: tuple[str, ...] | None = None):
    metric = get_or_create_counter(name, documentation, labelnames)
    _REGISTERED_METRICS.add(getattr(metric, "_name", name))
    return metric


def _gauge(name: str, documentation: str, labelnames: tuple[str, ...] | None = None):
    metric = get_or_create_gauge(name, documentation, labelnames)
    _REGISTERED_METRICS.add(getattr(metric, "_name", name))
    return metric


events_appended_total = _counter(
    "masterchef_events_appended_total",
    "Total number of events sealed into the hash-chained log",
)

event_subscriber_drops_total = _counter(
    "masterchef_event_subscriber_drops_total",
    "Events dropped because a subscriber queue was full",
)

event_subscribers = _gauge(
    "masterchef_event_subscribers",
    "Number of active event log subscribers",
)

deliveries_total = _counter(
    "masterchef_deliveries_total",
    "Outbound webhook and notification deliveries grouped by outcome",
    ("channel", "status"),
)

breakglass_transitions_total = _counter(
    "masterchef_breakglass_transitions_total",
    "Break-glass request transitions grouped by resulting status",
    ("status",),
)

dead_letters_total = _counter(
    "masterchef_command_dead_letters_total",
    "Commands routed to the dead-letter queue",
)


def record_delivery(channel: str, status: str) -> None:
    deliveries_total.labels(channel=channel, status=status).inc()


def record_breakglass_transition(status: str) -> None:
    breakglass_transitions_total.labels(status=status).inc()


def reset_metrics() -> None:
    """Zero every control-plane metric; used by tests."""

    reset_registered_metrics(_REGISTERED_METRICS)


__all__ = [
    "breakglass_transitions_total",
    "dead_letters_total",
    "deliveries_total",
    "event_subscriber_drops_total",
    "event_subscribers",
    "events_appended_total",
    "get_metric_value",
    "record_breakglass_transition",
    "record_delivery",
    "reset_metrics",
]
