"""Ride state machine and models."""

from datetime import datetime
from enum import Enum
from typing import Self

from pydantic import BaseModel, Field, model_validator

from ride_dispatch.history import ActionEntry, LockedEntry, RedispatchedEntry, TimelineEvent
from ride_dispatch.issues import Issue
from ride_dispatch.pricing import PricingDetails, PricingInputs
from ride_dispatch.recurrence.rules import RecurringTemplate


class RideStatus(str, Enum):
    """Ride lifecycle states."""

    CREATED = "created"
    SENT = "sent"
    LOCKED = "locked"
    ASSIGNED = "assigned"
    APPROVED = "approved"
    ENROUTE = "enroute"
    ARRIVED = "arrived"
    FINISHED = "finished"
    CANCELLED = "cancelled"


class RideAction(str, Enum):
    """Actions that move a ride between states."""

    DISPATCH = "dispatch"
    LOCK = "lock"
    ASSIGN = "assign"
    RELEASE = "release"
    APPROVE = "approve"
    ENROUTE = "enroute"
    ARRIVE = "arrive"
    FINISH = "finish"
    REDISPATCH = "redispatch"
    CANCEL = "cancel"


TERMINAL_STATUSES = frozenset({RideStatus.FINISHED, RideStatus.CANCELLED})
NON_TERMINAL_STATUSES = frozenset(set(RideStatus) - TERMINAL_STATUSES)
DRIVER_BOUND_STATUSES = frozenset(
    {
        RideStatus.ASSIGNED,
        RideStatus.APPROVED,
        RideStatus.ENROUTE,
        RideStatus.ARRIVED,
        RideStatus.FINISHED,
    }
)
# Statuses in which the assigned driver is still busy with the ride.
ACTIVE_ASSIGNMENT_STATUSES = DRIVER_BOUND_STATUSES - TERMINAL_STATUSES

# action -> (allowed source statuses, target status)
TRANSITIONS: dict[RideAction, tuple[frozenset[RideStatus], RideStatus]] = {
    RideAction.DISPATCH: (frozenset({RideStatus.CREATED}), RideStatus.SENT),
    RideAction.LOCK: (frozenset({RideStatus.SENT}), RideStatus.LOCKED),
    RideAction.ASSIGN: (frozenset({RideStatus.LOCKED}), RideStatus.ASSIGNED),
    RideAction.RELEASE: (frozenset({RideStatus.LOCKED}), RideStatus.SENT),
    RideAction.APPROVE: (frozenset({RideStatus.ASSIGNED}), RideStatus.APPROVED),
    RideAction.ENROUTE: (frozenset({RideStatus.APPROVED}), RideStatus.ENROUTE),
    RideAction.ARRIVE: (frozenset({RideStatus.ENROUTE}), RideStatus.ARRIVED),
    RideAction.FINISH: (frozenset({RideStatus.ARRIVED}), RideStatus.FINISHED),
    RideAction.REDISPATCH: (
        frozenset({RideStatus.ASSIGNED, RideStatus.APPROVED, RideStatus.ENROUTE}),
        RideStatus.SENT,
    ),
    RideAction.CANCEL: (NON_TERMINAL_STATUSES, RideStatus.CANCELLED),
}


def target_status(action: RideAction, current: RideStatus) -> RideStatus | None:
    """Status reached by applying action from current, or None if not allowed."""
    sources, target = TRANSITIONS[action]
    return target if current in sources else None


class TripFacts(BaseModel):
    customer_name: str
    customer_phone: str
    pickup: str
    destination: str
    notes: str | None = None
    region: str | None = None
    distance_km: float = Field(default=0.0, ge=0)
    duration_min: float = Field(default=0.0, ge=0)
    surge_multiplier: float = Field(default=1.0, ge=1.0)

    def pricing_inputs(self) -> PricingInputs:
        return PricingInputs(
            distance_km=self.distance_km,
            duration_min=self.duration_min,
            surge_multiplier=self.surge_multiplier,
        )


class DriverInfo(BaseModel):
    driver_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)


class OccurrenceRef(BaseModel):
    """Link from a materialized ride back to its template."""

    template_id: str
    scheduled_for: datetime


class RideSummary(BaseModel):
    """What drivers see in an offer; no customer contact details."""

    ride_id: str
    ride_number: int
    pickup: str
    destination: str
    price: float
    region: str | None = None
    notes: str | None = None


class Ride(BaseModel):
    """Ride document: trip facts, lifecycle state and its audit trail."""

    ride_id: str
    ride_number: int = Field(ge=1)
    trip: TripFacts
    price: float = Field(ge=0)
    commission_rate: float = Field(default=0.10, ge=0, le=1)
    commission_amount: float = Field(default=0.0, ge=0)
    status: RideStatus = Field(default=RideStatus.CREATED)
    driver_id: str | None = None
    driver_name: str | None = None
    driver_phone: str | None = None
    cancel_reason: str | None = None
    rating: int | None = Field(default=None, ge=1, le=5)
    pricing_details: PricingDetails
    action_history: list[ActionEntry] = Field(min_length=1)
    timeline: list[TimelineEvent] = Field(default_factory=list)
    issues: list[Issue] = Field(default_factory=list)
    recurring: RecurringTemplate | None = None
    occurrence_of: OccurrenceRef | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    version: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_invariants(self) -> Self:
        violations = self.invariant_violations()
        if violations:
            raise ValueError("; ".join(violations))
        return self

    def invariant_violations(self) -> list[str]:
        violations = []

        if (self.completed_at is not None) != (self.status == RideStatus.FINISHED):
            violations.append("completed_at must be set iff status is finished")
        if (self.cancelled_at is not None) != (self.status == RideStatus.CANCELLED):
            violations.append("cancelled_at must be set iff status is cancelled")

        bound = self.status in DRIVER_BOUND_STATUSES
        driver_fields = (self.driver_id, self.driver_name, self.driver_phone)
        if bound and not all(driver_fields):
            violations.append(f"driver fields required in status {self.status.value}")
        if not bound and any(driver_fields):
            violations.append(f"driver fields must be empty in status {self.status.value}")

        if (self.status == RideStatus.CANCELLED) != bool(self.cancel_reason):
            violations.append("cancel_reason must be set iff status is cancelled")
        if self.rating is not None and self.status != RideStatus.FINISHED:
            violations.append("only finished rides can be rated")
        if not self.action_history:
            violations.append("action_history cannot be empty")

        return violations

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_template(self) -> bool:
        return self.recurring is not None

    def redispatch_count(self) -> int:
        """Number of times the ride went back to drivers after being taken."""
        return sum(1 for entry in self.action_history if isinstance(entry, RedispatchedEntry))

    def last_lock_entry(self) -> LockedEntry | None:
        for entry in reversed(self.action_history):
            if isinstance(entry, LockedEntry):
                return entry
        return None

    def summary(self) -> RideSummary:
        return RideSummary(
            ride_id=self.ride_id,
            ride_number=self.ride_number,
            pickup=self.trip.pickup,
            destination=self.trip.destination,
            price=self.price,
            region=self.trip.region,
            notes=self.trip.notes,
        )
