from .context import ContextFilter, LogContext, log_context, log_ride_context
from .filters import DefaultCorrelationFilter, PIIFilter
from .formatters import DevFormatter, JSONFormatter
from .setup import setup_logging

__all__ = [
    "ContextFilter",
    "LogContext",
    "log_context",
    "log_ride_context",
    "DefaultCorrelationFilter",
    "PIIFilter",
    "DevFormatter",
    "JSONFormatter",
    "setup_logging",
]
