"""Background thread that reverts rides whose dispatch lock expired."""

import logging
import threading

from ride_dispatch.dispatch.coordinator import DispatchCoordinator

logger = logging.getLogger(__name__)


class LockExpirySweeper:
    def __init__(self, coordinator: DispatchCoordinator, interval_seconds: float):
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name="lock-expiry-sweeper", daemon=True)

    def start(self) -> None:
        if not self._thread.is_alive():
            logger.info("Starting lock expiry sweeper (interval=%ss)", self.interval_seconds)
            self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()

    def run_once(self) -> int:
        return self.coordinator.expire_stale_locks()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                logger.exception("Lock expiry sweep failed")
