"""In-memory table of dispatch locks (offer locks)."""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta

from ride_dispatch.core.exceptions import AlreadyLocked

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchLock:
    ride_id: str
    driver_id: str
    acquired_at: datetime
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at


class LockTable:
    """Tracks the offer lock of every ride, indexed by ride and by driver.

    Invariants: at most one lock per ride and at most one lock per driver.
    Expired entries are treated as absent and are dropped on the next access
    that touches them. Thread-safe: every method runs under one mutex.
    """

    def __init__(self, expired_memory: int = 1024) -> None:
        self._lock = threading.Lock()
        self._by_ride: dict[str, DispatchLock] = {}
        self._by_driver: dict[str, DispatchLock] = {}
        self._recently_expired: OrderedDict[str, DispatchLock] = OrderedDict()
        self._expired_memory = expired_memory

    def acquire(
        self, ride_id: str, driver_id: str, ttl: timedelta, now: datetime
    ) -> tuple[DispatchLock, bool]:
        """Lock ride for driver.

        Returns (lock, created). An active lock already held by the same driver
        is returned with created=False. Raises AlreadyLocked if the ride is
        held by another driver or the driver holds another ride.
        """
        with self._lock:
            current = self._by_ride.get(ride_id)
            if current is not None:
                if current.is_active(now):
                    if current.driver_id == driver_id:
                        return current, False
                    raise AlreadyLocked(
                        f"Ride {ride_id} is locked by another driver",
                        details={"ride_id": ride_id, "expires_at": current.expires_at.isoformat()},
                    )
                self._drop(current, expired=True)

            held = self._by_driver.get(driver_id)
            if held is not None:
                if held.is_active(now):
                    raise AlreadyLocked(
                        f"Driver {driver_id} already holds a lock on ride {held.ride_id}",
                        details={"driver_id": driver_id, "held_ride_id": held.ride_id},
                    )
                self._drop(held, expired=True)

            lock = DispatchLock(
                ride_id=ride_id,
                driver_id=driver_id,
                acquired_at=now,
                expires_at=now + ttl,
            )
            self._by_ride[ride_id] = lock
            self._by_driver[driver_id] = lock
            forgotten = self._recently_expired.get(ride_id)
            if forgotten is not None and forgotten.driver_id == driver_id:
                del self._recently_expired[ride_id]
            return lock, True

    def get(self, ride_id: str) -> DispatchLock | None:
        """Stored lock for ride, active or not."""
        with self._lock:
            return self._by_ride.get(ride_id)

    def active_for_ride(self, ride_id: str, now: datetime) -> DispatchLock | None:
        with self._lock:
            lock = self._by_ride.get(ride_id)
            return lock if lock is not None and lock.is_active(now) else None

    def active_for_driver(self, driver_id: str, now: datetime) -> DispatchLock | None:
        with self._lock:
            lock = self._by_driver.get(driver_id)
            return lock if lock is not None and lock.is_active(now) else None

    def release(self, ride_id: str, driver_id: str) -> DispatchLock | None:
        """Remove the ride's lock if driver holds it."""
        with self._lock:
            lock = self._by_ride.get(ride_id)
            if lock is None or lock.driver_id != driver_id:
                return None
            self._drop(lock, expired=False)
            return lock

    def take_expired(self, ride_id: str, now: datetime) -> DispatchLock | None:
        """Remove and return the ride's lock if it has expired."""
        with self._lock:
            lock = self._by_ride.get(ride_id)
            if lock is None or lock.is_active(now):
                return None
            self._drop(lock, expired=True)
            return lock

    def pop_expired(self, now: datetime) -> list[DispatchLock]:
        """Remove and return every expired lock."""
        with self._lock:
            expired = [lock for lock in self._by_ride.values() if not lock.is_active(now)]
            for lock in expired:
                self._drop(lock, expired=True)
            return expired

    def expired_for(self, ride_id: str, driver_id: str) -> DispatchLock | None:
        """Last lock on ride that expired while held by driver, if any."""
        with self._lock:
            lock = self._recently_expired.get(ride_id)
            return lock if lock is not None and lock.driver_id == driver_id else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_ride)

    def _drop(self, lock: DispatchLock, expired: bool) -> None:
        self._by_ride.pop(lock.ride_id, None)
        if self._by_driver.get(lock.driver_id) is lock:
            del self._by_driver[lock.driver_id]
        if expired:
            self._recently_expired[lock.ride_id] = lock
            self._recently_expired.move_to_end(lock.ride_id)
            while len(self._recently_expired) > self._expired_memory:
                self._recently_expired.popitem(last=False)
            logger.debug("Lock on ride %s held by %s expired", lock.ride_id, lock.driver_id)
