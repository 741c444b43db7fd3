"""Background thread that polls for due recurring templates."""

import logging
import threading
from typing import TYPE_CHECKING

from ride_dispatch.core.exceptions import RideDispatchError
from ride_dispatch.recurrence.scheduler import RecurrenceScheduler
from ride_dispatch.ride import Ride

if TYPE_CHECKING:
    from ride_dispatch.dispatch.coordinator import DispatchCoordinator

logger = logging.getLogger(__name__)


class RecurrenceRunner:
    """Polls run_due every interval; optionally offers each new ride."""

    def __init__(
        self,
        scheduler: RecurrenceScheduler,
        interval_seconds: float,
        coordinator: "DispatchCoordinator | None" = None,
        auto_dispatch: bool = False,
    ):
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self.coordinator = coordinator
        self.auto_dispatch = auto_dispatch and coordinator is not None
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name="recurrence-runner", daemon=True)

    def start(self) -> None:
        if not self._thread.is_alive():
            logger.info(
                "Starting recurrence runner (interval=%ss auto_dispatch=%s)",
                self.interval_seconds,
                self.auto_dispatch,
            )
            self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()

    def run_once(self) -> list[Ride]:
        rides = self.scheduler.run_due()
        if self.auto_dispatch and self.coordinator is not None:
            for ride in rides:
                try:
                    self.coordinator.offer(ride.ride_id)
                except RideDispatchError as e:
                    logger.warning("Could not offer ride %s: %s", ride.ride_id, e.message)
        return rides

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                logger.exception("Recurrence run failed")
