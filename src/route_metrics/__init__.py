"""Timer, meter and exception-meter instrumentation for FastAPI routes."""

from route_metrics.annotations import (
    ExceptionMetered,
    Metered,
    MetricNameParam,
    Timed,
    exception_metered,
    metered,
    timed,
)
from route_metrics.core.exceptions import MetricConfigurationError, MetricNameFormatError, MetricsError
from route_metrics.integrations.fastapi import MetricsFeature, instrumented_route_class
from route_metrics.naming import name
from route_metrics.telemetry.registry import Meter, MetricRegistry, Timer

__version__ = "0.1.0"
__all__ = [
    "timed",
    "metered",
    "exception_metered",
    "Timed",
    "Metered",
    "ExceptionMetered",
    "MetricNameParam",
    "MetricRegistry",
    "Timer",
    "Meter",
    "MetricsFeature",
    "instrumented_route_class",
    "name",
    "MetricsError",
    "MetricConfigurationError",
    "MetricNameFormatError",
]
