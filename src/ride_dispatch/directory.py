import threading
from dataclasses import dataclass

from ride_dispatch.core.clock import Clock, SystemClock
from ride_dispatch.dispatch.locks import DispatchLock, LockTable
from ride_dispatch.ride import DriverInfo


@dataclass
class DriverRecord:
    driver_id: str
    name: str
    phone: str
    region: str | None = None
    active: bool = True


class InMemoryDriverDirectory:
    """Registry of drivers, their regions and availability.

    Thread-safe: all methods are protected by a lock for concurrent access
    from request handlers and the background sweeper. The current lock of a
    driver is read from the shared LockTable; assignments are recorded by the
    coordinator when a driver confirms a ride.
    """

    def __init__(self, lock_table: LockTable, clock: Clock | None = None) -> None:
        self._lock = threading.Lock()
        self._drivers: dict[str, DriverRecord] = {}
        self._assignments: dict[str, str] = {}
        self._lock_table = lock_table
        self._clock = clock or SystemClock()

    def register_driver(
        self,
        driver_id: str,
        name: str,
        phone: str,
        region: str | None = None,
        active: bool = True,
    ) -> DriverRecord:
        with self._lock:
            record = DriverRecord(
                driver_id=driver_id, name=name, phone=phone, region=region, active=active
            )
            self._drivers[driver_id] = record
            return record

    def set_active(self, driver_id: str, active: bool) -> None:
        with self._lock:
            if driver_id in self._drivers:
                self._drivers[driver_id].active = active

    def list_active(self, region: str | None = None) -> list[str]:
        with self._lock:
            return [
                record.driver_id
                for record in self._drivers.values()
                if record.active and (region is None or record.region == region)
            ]

    def current_lock(self, driver_id: str) -> DispatchLock | None:
        return self._lock_table.active_for_driver(driver_id, self._clock.now())

    def current_ride(self, driver_id: str) -> str | None:
        """Ride the driver is locked on or assigned to, if any."""
        lock = self.current_lock(driver_id)
        if lock is not None:
            return lock.ride_id
        with self._lock:
            return self._assignments.get(driver_id)

    def record_assignment(self, driver_id: str, ride_id: str) -> None:
        with self._lock:
            self._assignments[driver_id] = ride_id

    def clear_assignment(self, driver_id: str, ride_id: str) -> bool:
        """Forget the assignment if it still points at ride_id."""
        with self._lock:
            if self._assignments.get(driver_id) != ride_id:
                return False
            del self._assignments[driver_id]
            return True

    def get_record(self, driver_id: str) -> DriverRecord | None:
        with self._lock:
            return self._drivers.get(driver_id)

    def all_drivers(self) -> list[DriverRecord]:
        with self._lock:
            return list(self._drivers.values())

    def get_driver(self, driver_id: str) -> DriverInfo | None:
        with self._lock:
            record = self._drivers.get(driver_id)
        if record is None:
            return None
        return DriverInfo(driver_id=record.driver_id, name=record.name, phone=record.phone)

    def __len__(self) -> int:
        with self._lock:
            return len(self._drivers)
