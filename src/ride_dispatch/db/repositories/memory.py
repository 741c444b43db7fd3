"""In-memory ride repository for tests and single-process deployments."""

import threading
from datetime import datetime

from ride_dispatch.core.exceptions import VersionConflict
from ride_dispatch.ride import Ride, RideStatus


class InMemoryRideRepository:
    """Stores serialized ride documents keyed by ride_id.

    Documents are kept as JSON so callers never share mutable state with the
    store; the version check and write happen under one lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._documents: dict[str, tuple[int, str]] = {}
        self._sequence = 0

    def get(self, ride_id: str) -> Ride | None:
        with self._lock:
            entry = self._documents.get(ride_id)
        if entry is None:
            return None
        return Ride.model_validate_json(entry[1])

    def save(self, ride: Ride, expected_version: int | None) -> Ride:
        new_version = 1 if expected_version is None else expected_version + 1
        stored = ride.model_copy(update={"version": new_version})
        document = stored.model_dump_json()

        with self._lock:
            entry = self._documents.get(ride.ride_id)
            if expected_version is None and entry is not None:
                raise VersionConflict(
                    f"Ride {ride.ride_id} already exists",
                    details={"ride_id": ride.ride_id},
                )
            if expected_version is not None and (entry is None or entry[0] != expected_version):
                raise VersionConflict(
                    f"Ride {ride.ride_id} changed since version {expected_version}",
                    details={"ride_id": ride.ride_id, "expected_version": expected_version},
                )
            self._documents[ride.ride_id] = (new_version, document)

        return stored

    def next_ride_number(self) -> int:
        with self._lock:
            self._sequence += 1
            return self._sequence

    def list_due_templates(self, as_of: datetime) -> list[Ride]:
        due = [
            ride
            for ride in self._all()
            if ride.recurring is not None and ride.recurring.is_due(as_of)
        ]
        return sorted(due, key=lambda ride: ride.recurring.next_occurrence)  # type: ignore[union-attr]

    def list_by_status(self, status: RideStatus) -> list[Ride]:
        rides = [ride for ride in self._all() if ride.status == status]
        return sorted(rides, key=lambda ride: ride.ride_number)

    def __len__(self) -> int:
        with self._lock:
            return len(self._documents)

    def _all(self) -> list[Ride]:
        with self._lock:
            documents = [document for _, document in self._documents.values()]
        return [Ride.model_validate_json(document) for document in documents]
