"""
Get-or-create store of named timers and meters.

Every metric keeps its own in-process statistics and forwards each update to
a shared OpenTelemetry instrument, tagged with the metric's name:

- Timer updates are recorded on a histogram (seconds)
- Meter marks are added to a counter

Usage:
    registry = MetricRegistry()

    with registry.timer("orders.list").time():
        ...
    registry.meter("orders.created").mark()
"""

import logging
import threading
import time
from typing import (
    Callable,
    Dict,
    Optional,
    Union,
)

from opentelemetry import metrics
from opentelemetry.metrics import Counter, Histogram

from route_metrics.core.config import settings

logger = logging.getLogger(__name__)

METRIC_NAME_ATTRIBUTE = "metric.name"


class TimerContext:
    """
    A running measurement for a single timer.

    Records its elapsed duration exactly once, on the first call to
    stop()/close() or on leaving a ``with`` block.
    """

    def __init__(self, timer: "Timer", clock: Callable[[], float]):
        self._timer = timer
        self._clock = clock
        self._start = clock()
        self._elapsed: Optional[float] = None

    def stop(self) -> float:
        """Stop the measurement and return the elapsed seconds."""
        if self._elapsed is None:
            self._elapsed = self._clock() - self._start
            self._timer.update(self._elapsed)
        return self._elapsed

    def close(self) -> None:
        self.stop()

    def __enter__(self) -> "TimerContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()


class Timer:
    """Call count and duration statistics for one metric name."""

    def __init__(self, name: str, histogram: Histogram, clock: Callable[[], float] = time.perf_counter):
        self.name = name
        self._histogram = histogram
        self._clock = clock
        self._attributes = {METRIC_NAME_ATTRIBUTE: name}
        self._lock = threading.Lock()
        self._count = 0
        self._total = 0.0
        self._min: Optional[float] = None
        self._max: Optional[float] = None

    def time(self) -> TimerContext:
        return TimerContext(self, self._clock)

    def update(self, seconds: float) -> None:
        if seconds < 0:
            return
        with self._lock:
            self._count += 1
            self._total += seconds
            self._min = seconds if self._min is None else min(self._min, seconds)
            self._max = seconds if self._max is None else max(self._max, seconds)
        self._histogram.record(seconds, self._attributes)

    @property
    def count(self) -> int:
        return self._count

    @property
    def total(self) -> float:
        return self._total

    @property
    def min(self) -> float:
        return self._min or 0.0

    @property
    def max(self) -> float:
        return self._max or 0.0

    @property
    def mean(self) -> float:
        with self._lock:
            return self._total / self._count if self._count else 0.0

    def __repr__(self) -> str:
        return f"Timer(name={self.name!r}, count={self._count})"


class Meter:
    """Event occurrence count for one metric name."""

    def __init__(self, name: str, counter: Counter, clock: Callable[[], float] = time.perf_counter):
        self.name = name
        self._counter = counter
        self._clock = clock
        self._attributes = {METRIC_NAME_ATTRIBUTE: name}
        self._lock = threading.Lock()
        self._count = 0
        self._start = clock()

    def mark(self, n: int = 1) -> None:
        with self._lock:
            self._count += n
        self._counter.add(n, self._attributes)

    @property
    def count(self) -> int:
        return self._count

    @property
    def mean_rate(self) -> float:
        """Marks per second since the meter was created."""
        elapsed = self._clock() - self._start
        if elapsed <= 0:
            return 0.0
        return self._count / elapsed

    def __repr__(self) -> str:
        return f"Meter(name={self.name!r}, count={self._count})"


Metric = Union[Timer, Meter]


class MetricRegistry:
    """
    Thread-safe registry of timers and meters keyed by exact name.

    ``timer(name)`` and ``meter(name)`` return the existing metric for the name
    or create it. Concurrent calls with the same name always agree on a single
    instance. A name is bound to one kind for its lifetime.

    Args:
        meter: OpenTelemetry meter used to create the backing instruments.
               Defaults to the global meter provider's meter for
               ``settings.meter_name``.
        timer_instrument: Name of the histogram receiving timer durations
        meter_instrument: Name of the counter receiving meter marks
        clock: Monotonic clock in seconds
    """

    def __init__(
        self,
        meter: Optional[metrics.Meter] = None,
        timer_instrument: Optional[str] = None,
        meter_instrument: Optional[str] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self._meter = meter or metrics.get_meter(settings.meter_name)
        self._clock = clock
        self._histogram = self._meter.create_histogram(
            name=timer_instrument or settings.timer_instrument,
            description="Duration of instrumented route invocations",
            unit="s",
        )
        self._counter = self._meter.create_counter(
            name=meter_instrument or settings.meter_instrument,
            description="Marks of instrumented route events",
            unit="1",
        )
        self._metrics: Dict[str, Metric] = {}
        self._lock = threading.Lock()

    def timer(self, name: str) -> Timer:
        return self._get_or_add(name, Timer)

    def meter(self, name: str) -> Meter:
        return self._get_or_add(name, Meter)

    def _get_or_add(self, name: str, kind: type) -> Metric:
        metric = self._metrics.get(name)
        if metric is None:
            with self._lock:
                metric = self._metrics.get(name)
                if metric is None:
                    if kind is Timer:
                        metric = Timer(name, self._histogram, self._clock)
                    else:
                        metric = Meter(name, self._counter, self._clock)
                    self._metrics[name] = metric
                    logger.debug(f"Registered {kind.__name__.lower()} '{name}'")
        if not isinstance(metric, kind):
            raise ValueError(f"{name} is already used for a different type of metric")
        return metric

    def remove(self, name: str) -> bool:
        with self._lock:
            return self._metrics.pop(name, None) is not None

    def get_names(self) -> list[str]:
        with self._lock:
            return sorted(self._metrics)

    def get_timers(self) -> Dict[str, Timer]:
        return self._snapshot(Timer)

    def get_meters(self) -> Dict[str, Meter]:
        return self._snapshot(Meter)

    def _snapshot(self, kind: type) -> Dict[str, Metric]:
        with self._lock:
            items = list(self._metrics.items())
        return {name: m for name, m in items if isinstance(m, kind)}

    def __contains__(self, name: str) -> bool:
        return name in self._metrics

    def __len__(self) -> int:
        return len(self._metrics)
