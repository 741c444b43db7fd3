"""Backoff loop for optimistic writes that lose a version race."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from .exceptions import VersionConflict

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """How many times to re-run a write, and how long to wait in between.

    The wait before retry ``n`` (zero-based) is ``base_delay * multiplier**n``,
    never longer than ``max_delay``. Only exceptions listed in
    ``retryable_exceptions`` trigger another attempt.
    """

    max_attempts: int = 5
    base_delay: float = 0.01
    multiplier: float = 2.0
    max_delay: float = 1.0
    retryable_exceptions: tuple[type[Exception], ...] = field(
        default_factory=lambda: (VersionConflict,)
    )

    def delay_before(self, retry_index: int) -> float:
        return min(self.base_delay * self.multiplier**retry_index, self.max_delay)

    def is_last(self, attempt: int) -> bool:
        return attempt + 1 >= self.max_attempts


def with_retry_sync(
    operation: Callable[[], T],
    config: RetryConfig | None = None,
    operation_name: str = "operation",
    on_retry: Callable[[Exception, int], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` until it returns or runs out of attempts.

    The operation must re-read whatever it writes on every call; a ride
    update that hit a stale version is only worth repeating against the
    fresh document. The final failure propagates unchanged.
    """
    cfg = config or RetryConfig()
    attempt = 0
    while True:
        try:
            return operation()
        except cfg.retryable_exceptions as exc:
            if cfg.is_last(attempt):
                logger.error(
                    "%s gave up after %d attempts: %s", operation_name, cfg.max_attempts, exc
                )
                raise
            wait = cfg.delay_before(attempt)
            logger.debug(
                "%s lost a race on attempt %d/%d, next try in %.3fs",
                operation_name,
                attempt + 1,
                cfg.max_attempts,
                wait,
            )
            if on_retry is not None:
                on_retry(exc, attempt)
            sleep(wait)
            attempt += 1
