"""
Pytest configuration and shared fixtures.
"""

from unittest.mock import MagicMock

import pytest

from route_metrics.core.config import Settings
from route_metrics.telemetry.registry import MetricRegistry


class FakeClock:
    """Manually advanced clock for deterministic durations."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def otel_meter() -> MagicMock:
    """OpenTelemetry meter whose instruments record calls."""
    meter = MagicMock()
    meter.create_histogram.return_value = MagicMock(name="histogram")
    meter.create_counter.return_value = MagicMock(name="counter")
    return meter


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(otel_meter: MagicMock, clock: FakeClock) -> MetricRegistry:
    return MetricRegistry(meter=otel_meter, clock=clock)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        service_name="route-metrics-test",
        enable_metrics=False,
        binding_table_path=tmp_path / "bindings.yml",
        log_level="debug",
    )
