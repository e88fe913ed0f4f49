"""
Exception types raised by route instrumentation.

Only configuration errors are meant to be visible: they surface at startup,
while endpoints are being bound. Request-time failures are either swallowed
(metric updates) or propagate as defects (name formatting).
"""


class MetricsError(Exception):
    """Base class for instrumentation errors."""


class MetricConfigurationError(MetricsError, ValueError):
    """An endpoint's metric declarations cannot be bound."""

    def __init__(self, message: str, endpoint: str | None = None):
        self.endpoint = endpoint
        if endpoint:
            message = f"{message} (endpoint: {endpoint})"
        super().__init__(message)


class MetricNameFormatError(MetricsError):
    """A metric name template could not be filled with request values."""

    def __init__(self, template: str, args: tuple, cause: Exception):
        self.template = template
        self.args_count = len(args)
        super().__init__(f"Cannot format metric name {template!r} with {len(args)} argument(s): {cause}")
