import logging
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Instrumentation settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ROUTE_METRICS_",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    service_name: str = "route-metrics"
    meter_name: str = "route_metrics"

    # Export settings
    enable_metrics: bool = True
    otlp_endpoint: Optional[str] = None  # Falls back to OTEL_EXPORTER_OTLP_ENDPOINT
    export_interval_millis: int = 60000
    export_timeout_millis: int = 5000
    prometheus_enabled: bool = False
    prometheus_port: int = 9464

    # OpenTelemetry instruments backing the registry
    timer_instrument: str = "route_metrics.timer.duration"
    meter_instrument: str = "route_metrics.meter.marks"

    # Optional declarative binding table (YAML)
    binding_table_path: Optional[Path] = None

    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_format: str = "%(asctime)s,p%(process)s,{%(filename)s:%(lineno)d},%(levelname)s,%(message)s"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)

        level = logging.getLevelName(self.log_level.upper())
        if not isinstance(level, int):
            raise ValueError(
                f"Invalid log_level: {self.log_level}. Must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")
        self.log_level = self.log_level.upper()

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level)


settings = Settings()
