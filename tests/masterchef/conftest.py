"""Shared fixtures for masterchef tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from masterchef.services.control import metrics as control_metrics


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture(autouse=True)
def _reset_control_metrics() -> None:
    control_metrics.reset_metrics()
    yield
    control_metrics.reset_metrics()
