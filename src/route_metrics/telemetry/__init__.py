"""
Export of registry metrics through the OpenTelemetry SDK.

``MetricsFeature`` calls ``setup_metrics`` when the application starts and
``shutdown_telemetry`` when it stops. Export problems are logged and never
prevent the application from serving requests.
"""

import os
import logging
from typing import List, Optional
from opentelemetry import metrics
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.metrics.view import View
from opentelemetry.sdk.metrics.view import ExplicitBucketHistogramAggregation

from route_metrics.core.config import Settings, settings as default_settings
from route_metrics.telemetry.registry import (
    Meter,
    MetricRegistry,
    Timer,
    TimerContext,
)

__all__ = [
    "setup_metrics",
    "shutdown_telemetry",
    "LATENCY_BUCKETS",
    "MetricRegistry",
    "Timer",
    "TimerContext",
    "Meter",
]


logger = logging.getLogger(__name__)

DEFAULT_OTLP_ENDPOINT = "http://otel-collector:4318"

# Route timer histogram boundaries, in seconds
LATENCY_BUCKETS = [
    0.005, 0.01, 0.025, 0.05, 0.075,
    0.1, 0.25, 0.5, 0.75,
    1.0, 2.5, 5.0, 7.5, 10.0
]


class SafeOTLPMetricExporter:
    """OTLP/HTTP metric exporter that logs failures instead of raising them."""

    def __init__(self, endpoint: str, timeout: float):
        self._endpoint = endpoint
        try:
            from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
            self._exporter = OTLPMetricExporter(endpoint=endpoint, timeout=timeout)
        except Exception as e:
            logger.warning(f"Cannot create OTLP metric exporter for {endpoint}: {e}")
            self._exporter = None

    # Read by PeriodicExportingMetricReader
    @property
    def _preferred_temporality(self):
        return self._exporter._preferred_temporality if self._exporter else {}

    @property
    def _preferred_aggregation(self):
        return self._exporter._preferred_aggregation if self._exporter else {}

    def _call(self, operation: str, *args, **kwargs):
        if self._exporter is None:
            return None
        try:
            return getattr(self._exporter, operation)(*args, **kwargs)
        except Exception as e:
            logger.debug(f"OTLP metric {operation} to {self._endpoint} failed: {e}")
            return None

    def export(self, *args, **kwargs):
        return self._call("export", *args, **kwargs)

    def shutdown(self, *args, **kwargs):
        return self._call("shutdown", *args, **kwargs)

    def force_flush(self, *args, **kwargs):
        return self._call("force_flush", *args, **kwargs)


def _prometheus_reader(config: Settings) -> Optional[MetricReader]:
    try:
        from opentelemetry.exporter.prometheus import PrometheusMetricReader
        from prometheus_client import start_http_server

        start_http_server(port=config.prometheus_port, addr="0.0.0.0")
        logger.info(f"Route metrics served for Prometheus on port {config.prometheus_port}")
        return PrometheusMetricReader()
    except Exception as e:
        logger.warning(f"Prometheus reader not started: {e}")
        return None


def _otlp_reader(endpoint: str, config: Settings) -> Optional[MetricReader]:
    try:
        exporter = SafeOTLPMetricExporter(
            endpoint=f"{endpoint}/v1/metrics",
            timeout=config.export_timeout_millis / 1000,
        )
        reader = PeriodicExportingMetricReader(
            exporter,
            export_interval_millis=config.export_interval_millis,
            export_timeout_millis=config.export_timeout_millis,
        )
        logger.info(f"Route metrics exported to {endpoint}")
        return reader
    except Exception as e:
        logger.warning(f"OTLP reader not started: {e}")
        return None


def _timer_view(config: Settings) -> View:
    return View(
        instrument_name=config.timer_instrument,
        aggregation=ExplicitBucketHistogramAggregation(boundaries=LATENCY_BUCKETS),
    )


def setup_metrics(
    service_name: str,
    otlp_endpoint: Optional[str] = None,
    enable_metrics: bool = True,
    config: Optional[Settings] = None,
) -> Optional[MeterProvider]:
    """
    Install a global meter provider exporting the registry's instruments.

    Registries created before this call record through the provider as soon
    as it is installed.

    Args:
        service_name: ``service.name`` resource attribute
        otlp_endpoint: Collector base URL; falls back to ``config.otlp_endpoint``,
                       then ``OTEL_EXPORTER_OTLP_ENDPOINT``
        enable_metrics: Skip setup entirely when False
        config: Settings for readers, views and export intervals

    Returns:
        The installed provider, or None when nothing was installed
    """
    if not enable_metrics:
        logger.info("Route metrics export disabled")
        return None

    config = config or default_settings
    otlp_endpoint = otlp_endpoint or config.otlp_endpoint or os.getenv(
        "OTEL_EXPORTER_OTLP_ENDPOINT", DEFAULT_OTLP_ENDPOINT)

    readers: List[MetricReader] = []
    if config.prometheus_enabled:
        readers.append(_prometheus_reader(config))
    if otlp_endpoint:
        readers.append(_otlp_reader(otlp_endpoint, config))
    readers = [reader for reader in readers if reader is not None]
    if not readers:
        logger.warning("No metric readers configured; route metrics are not exported")
        return None

    try:
        provider = MeterProvider(
            resource=Resource.create(attributes={SERVICE_NAME: service_name}),
            metric_readers=readers,
            views=[_timer_view(config)],
        )
        metrics.set_meter_provider(provider)
    except Exception as e:
        logger.warning(f"Metrics setup failed: {e}")
        return None

    logger.info(f"Route metrics for {service_name} initialized with {len(readers)} reader(s)")
    return provider


def shutdown_telemetry(provider: Optional[MeterProvider] = None) -> None:
    """Flush and shut down ``provider``, or the global meter provider."""
    if provider is None:
        provider = metrics.get_meter_provider()
    try:
        if hasattr(provider, "shutdown"):
            provider.shutdown(timeout_millis=1000)
    except Exception as e:
        logger.debug(f"Telemetry shutdown failed: {e}")
