"""Audit trail entries and customer-facing timeline events.

Both are closed variant types: each entry kind carries only the fields that
are meaningful for it, and the ``action`` / ``event`` field selects the kind
when a stored ride is loaded back.
"""

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from ride_dispatch.issues import IssueSeverity, IssueType


class _Entry(BaseModel):
    model_config = ConfigDict(frozen=True)

    performed_by: str
    timestamp: datetime


class CreatedEntry(_Entry):
    action: Literal["created"] = "created"
    price: float


class SentEntry(_Entry):
    action: Literal["sent"] = "sent"
    candidate_count: int = 0


class LockedEntry(_Entry):
    action: Literal["locked"] = "locked"
    driver_id: str
    expires_at: datetime


class AssignedEntry(_Entry):
    action: Literal["assigned"] = "assigned"
    driver_id: str
    driver_name: str


class ApprovedEntry(_Entry):
    action: Literal["approved"] = "approved"
    note: str | None = None


class EnrouteEntry(_Entry):
    action: Literal["enroute"] = "enroute"


class ArrivedEntry(_Entry):
    action: Literal["arrived"] = "arrived"


class CompletedEntry(_Entry):
    action: Literal["completed"] = "completed"
    final_total: float
    repriced: bool = False


class CancelledEntry(_Entry):
    action: Literal["cancelled"] = "cancelled"
    reason: str
    previous_driver_id: str | None = None


class RedispatchedEntry(_Entry):
    action: Literal["redispatched"] = "redispatched"
    previous_driver_id: str | None = None
    reason: str


class IssueReportedEntry(_Entry):
    action: Literal["issue_reported"] = "issue_reported"
    issue_id: str
    issue_type: IssueType
    severity: IssueSeverity


class IssueResolvedEntry(_Entry):
    action: Literal["issue_resolved"] = "issue_resolved"
    issue_id: str
    resolution: str


class TripUpdatedEntry(_Entry):
    action: Literal["trip_updated"] = "trip_updated"
    changed_fields: list[str]


class RatedEntry(_Entry):
    action: Literal["rated"] = "rated"
    rating: int
    comment: str | None = None


ActionEntry = Annotated[
    CreatedEntry
    | SentEntry
    | LockedEntry
    | AssignedEntry
    | ApprovedEntry
    | EnrouteEntry
    | ArrivedEntry
    | CompletedEntry
    | CancelledEntry
    | RedispatchedEntry
    | IssueReportedEntry
    | IssueResolvedEntry
    | TripUpdatedEntry
    | RatedEntry,
    Field(discriminator="action"),
]


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    address: str | None = None


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    location: Location | None = None


class RideCreatedEvent(_Event):
    event: Literal["created"] = "created"


class DispatchedEvent(_Event):
    event: Literal["dispatched"] = "dispatched"


class DriverAcceptedEvent(_Event):
    event: Literal["driver_accepted"] = "driver_accepted"
    driver_id: str


class DriverAssignedEvent(_Event):
    event: Literal["driver_assigned"] = "driver_assigned"
    driver_id: str


class RideApprovedEvent(_Event):
    event: Literal["ride_approved"] = "ride_approved"


class DriverEnrouteEvent(_Event):
    event: Literal["driver_enroute"] = "driver_enroute"


class DriverArrivedEvent(_Event):
    event: Literal["driver_arrived"] = "driver_arrived"


class RideCompletedEvent(_Event):
    event: Literal["ride_completed"] = "ride_completed"
    final_total: float


class RideCancelledEvent(_Event):
    event: Literal["ride_cancelled"] = "ride_cancelled"
    reason: str


class RideRedispatchedEvent(_Event):
    event: Literal["ride_redispatched"] = "ride_redispatched"
    reason: str


TimelineEvent = Annotated[
    RideCreatedEvent
    | DispatchedEvent
    | DriverAcceptedEvent
    | DriverAssignedEvent
    | RideApprovedEvent
    | DriverEnrouteEvent
    | DriverArrivedEvent
    | RideCompletedEvent
    | RideCancelledEvent
    | RideRedispatchedEvent,
    Field(discriminator="event"),
]
