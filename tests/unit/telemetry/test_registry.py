"""
Tests for route_metrics/telemetry/registry.py
"""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

import pytest

from route_metrics.telemetry.registry import METRIC_NAME_ATTRIBUTE, Meter, MetricRegistry, Timer


@pytest.mark.unit
@pytest.mark.metrics
class TestMetricRegistry:
    def test_creates_backing_instruments(self, otel_meter):
        MetricRegistry(meter=otel_meter, timer_instrument="t.duration", meter_instrument="m.marks")

        otel_meter.create_histogram.assert_called_once_with(
            name="t.duration", description="Duration of instrumented route invocations", unit="s")
        otel_meter.create_counter.assert_called_once_with(
            name="m.marks", description="Marks of instrumented route events", unit="1")

    def test_uses_global_meter_by_default(self):
        with patch("opentelemetry.metrics.get_meter") as mock_get_meter:
            MetricRegistry()

            mock_get_meter.assert_called_once_with("route_metrics")

    def test_get_or_create_returns_same_instance(self, registry):
        assert registry.timer("a") is registry.timer("a")
        assert registry.meter("b") is registry.meter("b")
        assert len(registry) == 2

    def test_name_is_bound_to_one_kind(self, registry):
        registry.timer("shared")

        with pytest.raises(ValueError, match="different type of metric"):
            registry.meter("shared")

    def test_snapshots(self, registry):
        timer = registry.timer("t")
        meter = registry.meter("m")

        assert registry.get_timers() == {"t": timer}
        assert registry.get_meters() == {"m": meter}
        assert registry.get_names() == ["m", "t"]
        assert "t" in registry

    def test_remove(self, registry):
        registry.meter("m")

        assert registry.remove("m") is True
        assert registry.remove("m") is False
        assert "m" not in registry

    def test_concurrent_get_or_create_agrees_on_one_instance(self, registry):
        with ThreadPoolExecutor(max_workers=8) as pool:
            timers = list(pool.map(lambda _: registry.timer("contended"), range(200)))

        assert all(timer is timers[0] for timer in timers)
        assert list(registry.get_timers()) == ["contended"]


@pytest.mark.unit
@pytest.mark.metrics
class TestTimer:
    def test_context_records_elapsed_time(self, registry, otel_meter, clock):
        timer = registry.timer("orders")

        context = timer.time()
        clock.advance(0.25)
        elapsed = context.stop()

        assert elapsed == pytest.approx(0.25)
        assert timer.count == 1
        assert timer.total == pytest.approx(0.25)
        histogram = otel_meter.create_histogram.return_value
        histogram.record.assert_called_once_with(pytest.approx(0.25), {METRIC_NAME_ATTRIBUTE: "orders"})

    def test_stop_records_exactly_once(self, registry, clock):
        timer = registry.timer("orders")

        context = timer.time()
        clock.advance(1.0)
        context.stop()
        clock.advance(1.0)
        context.close()

        assert timer.count == 1
        assert timer.max == pytest.approx(1.0)

    def test_context_manager_records_on_error(self, registry, clock):
        timer = registry.timer("orders")

        with pytest.raises(RuntimeError):
            with timer.time():
                clock.advance(0.5)
                raise RuntimeError("boom")

        assert timer.count == 1

    def test_statistics(self, clock):
        timer = Timer("stats", MagicMock(), clock)

        for seconds in (0.1, 0.3, 0.2):
            timer.update(seconds)

        assert timer.count == 3
        assert timer.min == pytest.approx(0.1)
        assert timer.max == pytest.approx(0.3)
        assert timer.mean == pytest.approx(0.2)

    def test_ignores_negative_durations(self, clock):
        histogram = MagicMock()
        timer = Timer("stats", histogram, clock)

        timer.update(-1.0)

        assert timer.count == 0
        histogram.record.assert_not_called()

    def test_empty_timer(self, clock):
        timer = Timer("empty", MagicMock(), clock)

        assert (timer.count, timer.min, timer.max, timer.mean) == (0, 0.0, 0.0, 0.0)


@pytest.mark.unit
@pytest.mark.metrics
class TestMeter:
    def test_mark(self, registry, otel_meter):
        meter = registry.meter("hits")

        meter.mark()
        meter.mark(3)

        assert meter.count == 4
        counter = otel_meter.create_counter.return_value
        counter.add.assert_called_with(3, {METRIC_NAME_ATTRIBUTE: "hits"})

    def test_mean_rate(self, clock):
        meter = Meter("hits", MagicMock(), clock)

        meter.mark(10)
        clock.advance(5.0)

        assert meter.mean_rate == pytest.approx(2.0)

    def test_mean_rate_without_elapsed_time(self, clock):
        meter = Meter("hits", MagicMock(), clock)
        meter.mark()

        assert meter.mean_rate == 0.0

    def test_concurrent_marks_are_not_lost(self, registry):
        meter = registry.meter("busy")

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: meter.mark(), range(1000)))

        assert meter.count == 1000
