"""Broadcast channels that deliver ride offers to drivers."""

import logging
import threading
from dataclasses import dataclass

from ride_dispatch.ports import DeliveryOutcome
from ride_dispatch.ride import RideSummary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SentOffer:
    driver_id: str
    summary: RideSummary


class LoggingBroadcastChannel:
    """Logs each offer and keeps the most recent ones in memory.

    Stands in for a push or messaging integration; every delivery succeeds.
    """

    def __init__(self, history_size: int = 1000) -> None:
        self._lock = threading.Lock()
        self._sent: list[SentOffer] = []
        self._history_size = history_size

    def offer(self, summary: RideSummary, driver_ids: list[str]) -> dict[str, DeliveryOutcome]:
        outcomes: dict[str, DeliveryOutcome] = {}
        with self._lock:
            for driver_id in driver_ids:
                self._sent.append(SentOffer(driver_id=driver_id, summary=summary))
                outcomes[driver_id] = DeliveryOutcome.DELIVERED
            del self._sent[: max(0, len(self._sent) - self._history_size)]

        logger.info(
            "Offered ride #%d (%s) to %d drivers",
            summary.ride_number,
            summary.ride_id,
            len(driver_ids),
        )
        return outcomes

    def sent_to(self, driver_id: str) -> list[RideSummary]:
        with self._lock:
            return [offer.summary for offer in self._sent if offer.driver_id == driver_id]
