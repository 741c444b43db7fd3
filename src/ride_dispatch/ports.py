"""Interfaces of the collaborators the engine and coordinator depend on.

Implementations are passed in explicitly; their lifecycle belongs to the
hosting application.
"""

from datetime import datetime, tzinfo
from enum import Enum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from ride_dispatch.dispatch.locks import DispatchLock
    from ride_dispatch.pricing import PricingRates
    from ride_dispatch.ride import DriverInfo, Ride, RideStatus, RideSummary


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


class RideRepository(Protocol):
    def get(self, ride_id: str) -> "Ride | None": ...

    def save(self, ride: "Ride", expected_version: int | None) -> "Ride":
        """Persist ride if the stored version still equals expected_version.

        ``expected_version=None`` inserts a new ride. Returns the stored ride
        with its version incremented; raises VersionConflict otherwise.
        """
        ...

    def next_ride_number(self) -> int: ...

    def list_due_templates(self, as_of: datetime) -> list["Ride"]: ...

    def list_by_status(self, status: "RideStatus") -> list["Ride"]: ...


class BroadcastChannel(Protocol):
    def offer(
        self, summary: "RideSummary", driver_ids: list[str]
    ) -> dict[str, DeliveryOutcome]: ...


class DriverDirectory(Protocol):
    def list_active(self, region: str | None = None) -> list[str]: ...

    def current_lock(self, driver_id: str) -> "DispatchLock | None": ...

    def current_ride(self, driver_id: str) -> str | None:
        """Ride the driver is currently locked on or assigned to."""
        ...

    def record_assignment(self, driver_id: str, ride_id: str) -> None: ...

    def clear_assignment(self, driver_id: str, ride_id: str) -> bool: ...

    def get_driver(self, driver_id: str) -> "DriverInfo | None": ...


class SettingsProvider(Protocol):
    def pricing_rates(self) -> "PricingRates": ...

    def timezone(self) -> tzinfo: ...
