"""Per-thread ride/driver/template fields stamped onto log records.

Request handlers, the expiry sweeper and the recurrence runner each work on
their own thread, so the fields live in a ``threading.local``.
"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

_state = threading.local()


def _fields() -> dict[str, Any]:
    fields = getattr(_state, "fields", None)
    if fields is None:
        fields = _state.fields = {}
    return fields


class LogContext:
    """Accessors for the current thread's context fields."""

    @staticmethod
    def set(**fields: Any) -> None:
        _fields().update(fields)

    @staticmethod
    def get() -> dict[str, Any]:
        return _fields()

    @staticmethod
    def clear() -> None:
        _state.fields = {}


class ContextFilter(logging.Filter):
    """Copy context fields onto each record, without clobbering ``extra=``."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in _fields().items():
            record.__dict__.setdefault(name, value)
        return True


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Add ``fields`` for the duration of the block.

    On exit the thread's fields are put back exactly as they were, so an
    inner block can override ``ride_id`` without leaking it outward.
    """
    saved = dict(_fields())
    LogContext.set(**fields)
    try:
        yield
    finally:
        _state.fields = saved


@contextmanager
def log_ride_context(ride_id: str, **fields: Any) -> Iterator[None]:
    # A ride's own id is its correlation id unless the caller has a better one.
    fields.setdefault("correlation_id", ride_id)
    with log_context(ride_id=ride_id, **fields):
        yield
