"""Idempotent Prometheus metric registration.

Modules that define metrics at import time call the ``get_or_create_*``
helpers so re-imports (and test reloads) reuse the collector already present
in the registry instead of tripping duplicate-registration errors.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Dict, Tuple, TypeVar

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    REGISTRY as global_registry,
)
from prometheus_client.metrics import MetricWrapperBase

__all__ = [
    "get_or_create_counter",
    "get_or_create_gauge",
    "get_metric_value",
    "reset_metrics",
]

MetricT = TypeVar("MetricT", bound=MetricWrapperBase)
RegistryKey = Tuple[CollectorRegistry, str]

_METRIC_CACHE: Dict[RegistryKey, MetricWrapperBase] = {}
_RESET_CALLBACKS: Dict[RegistryKey, Callable[[], None]] = {}


def get_or_create_counter(
    name: str,
    documentation: str,
    labelnames: Sequence[str] | None = None,
    *,
    registry: CollectorRegistry | None = None,
) -> Counter:
    """Return an existing counter or register a new one."""

    reg = registry or global_registry
    metric = _get_or_create_metric(Counter, name, documentation, labelnames, registry=reg)
    _register_reset(metric, reg)
    return metric


def get_or_create_gauge(
    name: str,
    documentation: str,
    labelnames: Sequence[str] | None = None,
    *,
    registry: CollectorRegistry | None = None,
) -> Gauge:
    """Return an existing gauge or register a new one."""

    reg = registry or global_registry
    metric = _get_or_create_metric(Gauge, name, documentation, labelnames, registry=reg)
    _register_reset(metric, reg)
    return metric


def reset_metrics(
    names: Iterable[str] | None = None,
    *,
    registry: CollectorRegistry | None = None,
) -> None:
    """Zero registered metrics for ``registry``.

    When ``names`` is ``None`` every metric registered through this module is
    reset.
    """

    reg = registry or global_registry
    if names is None:
        keys = [key for key in _RESET_CALLBACKS if key[0] is reg]
    else:
        requested = set(names)
        keys = [key for key in _RESET_CALLBACKS if key[0] is reg and key[1] in requested]
    for key in keys:
        _RESET_CALLBACKS[key]()


def get_metric_value(
    metric: MetricWrapperBase, labels: Mapping[str, str] | None = None
) -> float:
    """Return the current sample value for ``metric``.

    When ``labels`` are provided the matching labelled sample is returned,
    otherwise the first unlabelled sample is used. Missing samples read as 0.
    """

    for family in metric.collect():
        for sample in family.samples:
            if sample.name.endswith("_created"):
                continue
            if labels is None and sample.labels:
                continue
            if labels is not None and sample.labels != dict(labels):
                continue
            return float(sample.value)
    return 0.0


def _get_or_create_metric(
    metric_cls: type[MetricT],
    name: str,
    documentation: str,
    labelnames: Sequence[str] | None,
    *,
    registry: CollectorRegistry,
) -> MetricT:
    labels = tuple(labelnames or ())
    cache_key = (registry, name)
    cached = _METRIC_CACHE.get(cache_key)
    if cached is not None:
        if isinstance(cached, metric_cls) and _labels_match(cached, labels):
            return cached  # type: ignore[return-value]
        registry.unregister(cached)
        _METRIC_CACHE.pop(cache_key, None)

    existing = _lookup_metric(registry, name)
    if existing is not None:
        if not isinstance(existing, metric_cls):
            raise TypeError(
                f"Metric '{name}' already registered with incompatible type {type(existing)!r}"
            )
        if not _labels_match(existing, labels):
            registry.unregister(existing)
            existing = None
    metric = existing if existing is not None else metric_cls(
        name, documentation, labels, registry=registry
    )
    _METRIC_CACHE[cache_key] = metric
    return metric  # type: ignore[return-value]


def _register_reset(metric: MetricWrapperBase, registry: CollectorRegistry) -> None:
    name = getattr(metric, "_name", None)
    if not name:
        return

    def _reset() -> None:
        if getattr(metric, "_labelnames", ()):
            metric.clear()
        elif isinstance(metric, Counter):
            metric._value.set(0)  # type: ignore[attr-defined]
        elif isinstance(metric, Gauge):
            metric.set(0)

    _RESET_CALLBACKS[(registry, name)] = _reset


def _lookup_metric(registry: CollectorRegistry, name: str) -> MetricWrapperBase | None:
    collectors = getattr(registry, "_names_to_collectors", None)
    if collectors is None:
        return None
    return collectors.get(name)


def _labels_match(metric: MetricWrapperBase, expected: Sequence[str]) -> bool:
    return tuple(getattr(metric, "_labelnames", ())) == tuple(expected)
