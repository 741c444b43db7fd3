"""Root logger configuration for the dispatch service."""

import logging
import sys

from .context import ContextFilter
from .filters import DefaultCorrelationFilter, PIIFilter
from .formatters import DevFormatter, JSONFormatter

# Third-party loggers that are too chatty at INFO.
QUIET_LOGGERS = ("sqlalchemy.engine", "uvicorn.access")


def _build_handler(json_output: bool, environment: str) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(environment) if json_output else DevFormatter())
    # Masking runs before context injection so ride fields are never rewritten.
    for record_filter in (PIIFilter(), ContextFilter(), DefaultCorrelationFilter()):
        handler.addFilter(record_filter)
    return handler


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    environment: str = "development",
) -> None:
    """Replace any root handlers with a single stdout handler."""
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_build_handler(json_output, environment))
    root.setLevel(logging.getLevelName(level.upper()))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
