"""Core utilities for ride dispatch."""

from .clock import Clock, SystemClock, utc_now
from .exceptions import (
    AlreadyLocked,
    ConfigurationError,
    InvalidTransition,
    LockExpired,
    NotFoundError,
    PermanentError,
    RecurrenceExhausted,
    RideDispatchError,
    StateError,
    TransientError,
    ValidationError,
    VersionConflict,
)
from .keyed_lock import KeyedLock
from .retry import RetryConfig, with_retry_sync

__all__ = [
    "RideDispatchError",
    "TransientError",
    "VersionConflict",
    "PermanentError",
    "ValidationError",
    "NotFoundError",
    "StateError",
    "InvalidTransition",
    "AlreadyLocked",
    "RecurrenceExhausted",
    "ConfigurationError",
    "LockExpired",
    "RetryConfig",
    "with_retry_sync",
    "Clock",
    "SystemClock",
    "utc_now",
    "KeyedLock",
]
