# Configure logging for applications embedding route instrumentation
import logging
import sys
from typing import Optional

from route_metrics.core.config import Settings, settings as default_settings


def setup_logging(settings: Optional[Settings] = None) -> logging.Logger:
    """Configure the root logger to write to the console."""
    settings = settings or default_settings

    console_formatter = logging.Formatter(settings.log_format)

    # Get root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level_value)

    # Remove any existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(settings.log_level_value)
    console_handler.setFormatter(console_formatter)

    root_logger.addHandler(console_handler)

    return root_logger
