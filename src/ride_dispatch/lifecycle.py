"""Ride lifecycle engine: the ride state machine and its audit trail."""

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel

from ride_dispatch.core.clock import Clock, SystemClock
from ride_dispatch.core.exceptions import (
    InvalidTransition,
    NotFoundError,
    StateError,
    ValidationError,
    VersionConflict,
)
from ride_dispatch.core.retry import RetryConfig, with_retry_sync
from ride_dispatch.history import (
    ApprovedEntry,
    ArrivedEntry,
    AssignedEntry,
    CancelledEntry,
    CompletedEntry,
    CreatedEntry,
    DispatchedEvent,
    DriverAcceptedEvent,
    DriverArrivedEvent,
    DriverAssignedEvent,
    DriverEnrouteEvent,
    EnrouteEntry,
    IssueReportedEntry,
    IssueResolvedEntry,
    Location,
    LockedEntry,
    RatedEntry,
    RedispatchedEntry,
    RideApprovedEvent,
    RideCancelledEvent,
    RideCompletedEvent,
    RideCreatedEvent,
    RideRedispatchedEvent,
    SentEntry,
    TripUpdatedEntry,
)
from ride_dispatch.issues import Issue, IssueReport
from ride_dispatch.ports import RideRepository, SettingsProvider
from ride_dispatch.pricing import PricingCalculator, commission_for
from ride_dispatch.recurrence.rules import RecurrenceRule, RecurringTemplate, first_occurrence
from ride_dispatch.ride import (
    DriverInfo,
    OccurrenceRef,
    Ride,
    RideAction,
    RideStatus,
    TripFacts,
    target_status,
)
from ride_dispatch.ride_logging import log_ride_context
from ride_dispatch.settings import DispatchSettings

logger = logging.getLogger(__name__)

_PHONE_SEPARATORS = re.compile(r"[\s-]")


class RideRequest(BaseModel):
    """Caller input for a new ride. Validated by the engine, not the model."""

    customer_name: str
    customer_phone: str
    pickup: str
    destination: str
    notes: str | None = None
    region: str | None = None
    distance_km: float = 0.0
    duration_min: float = 0.0
    surge_multiplier: float = 1.0
    price: float | None = None
    recurrence: RecurrenceRule | None = None
    starts_at: datetime | None = None


class TripUpdate(BaseModel):
    """Partial change to trip facts; only fields that are set are applied."""

    customer_name: str | None = None
    customer_phone: str | None = None
    pickup: str | None = None
    destination: str | None = None
    notes: str | None = None
    region: str | None = None
    distance_km: float | None = None
    duration_min: float | None = None
    surge_multiplier: float | None = None


class TransitionDetails(BaseModel):
    reason: str | None = None
    driver: DriverInfo | None = None
    location: Location | None = None
    note: str | None = None
    expires_at: datetime | None = None
    candidate_count: int | None = None


@dataclass(frozen=True)
class Step:
    """One action applied as part of a single save."""

    action: RideAction
    actor: str
    details: TransitionDetails = field(default_factory=TransitionDetails)


StepPlan = Sequence[Step] | Callable[[Ride], Sequence[Step]]


class RideLifecycleEngine:
    """Validates and applies ride transitions.

    Every mutation is load, copy, mutate, check invariants, then a
    conditional save against the loaded version. On VersionConflict the
    whole step is re-run from a fresh load, validation included, so a
    concurrent loser sees the state the winner left behind.
    """

    def __init__(
        self,
        repository: RideRepository,
        settings_provider: SettingsProvider,
        clock: Clock | None = None,
        dispatch_settings: DispatchSettings | None = None,
        calculator: PricingCalculator | None = None,
    ):
        dispatch_settings = dispatch_settings or DispatchSettings()
        self._repository = repository
        self._settings_provider = settings_provider
        self._clock = clock or SystemClock()
        self._calculator = calculator or PricingCalculator()
        self._phone_pattern = re.compile(dispatch_settings.phone_pattern)
        self._retry_config = RetryConfig(
            max_attempts=dispatch_settings.version_retry_attempts,
            base_delay=dispatch_settings.version_retry_base_delay,
            max_delay=1.0,
            retryable_exceptions=(VersionConflict,),
        )

    @property
    def clock(self) -> Clock:
        return self._clock

    def get(self, ride_id: str) -> Ride:
        ride = self._repository.get(ride_id)
        if ride is None:
            raise NotFoundError(f"Ride {ride_id} not found", details={"ride_id": ride_id})
        return ride

    def list_by_status(self, status: RideStatus) -> list[Ride]:
        return self._repository.list_by_status(status)

    def list_due_templates(self, as_of: datetime) -> list[Ride]:
        return self._repository.list_due_templates(as_of)

    def create(
        self,
        request: RideRequest,
        actor: str,
        *,
        ride_id: str | None = None,
        occurrence_of: OccurrenceRef | None = None,
    ) -> Ride:
        """Validate a request, price it and store a new ride in status created."""
        trip = self._validate_trip(request.model_dump(include=set(TripFacts.model_fields)))
        if request.price is not None and request.price < 0:
            raise ValidationError("price cannot be negative", details={"price": request.price})
        if request.starts_at is not None and request.starts_at.tzinfo is None:
            raise ValidationError("starts_at must be timezone-aware")

        now = self._clock.now()
        rates = self._settings_provider.pricing_rates()
        pricing = self._calculator.compute(trip, rates, now)
        price = pricing.final_total if request.price is None else round(request.price, 2)

        recurring = None
        if request.recurrence is not None:
            first = first_occurrence(
                request.recurrence,
                request.starts_at or now,
                self._settings_provider.timezone(),
            )
            recurring = RecurringTemplate.start(request.recurrence, first)

        ride = Ride(
            ride_id=ride_id or str(uuid4()),
            ride_number=self._repository.next_ride_number(),
            trip=trip,
            price=price,
            commission_rate=rates.commission_rate,
            commission_amount=commission_for(price, rates.commission_rate),
            pricing_details=pricing,
            action_history=[CreatedEntry(performed_by=actor, timestamp=now, price=price)],
            timeline=[RideCreatedEvent(timestamp=now)],
            recurring=recurring,
            occurrence_of=occurrence_of,
            created_at=now,
            updated_at=now,
        )
        saved = self._repository.save(ride, expected_version=None)

        with log_ride_context(saved.ride_id):
            logger.info(
                "Created ride #%d price=%.2f recurring=%s",
                saved.ride_number,
                saved.price,
                saved.is_template,
            )
        return saved

    def transition(
        self,
        ride_id: str,
        action: RideAction,
        actor: str,
        details: TransitionDetails | None = None,
    ) -> Ride:
        step = Step(action=action, actor=actor, details=details or TransitionDetails())
        return self.apply(ride_id, [step], operation_name=action.value)

    def apply(self, ride_id: str, plan: StepPlan, operation_name: str = "apply") -> Ride:
        """Apply several steps in one save.

        ``plan`` is either a fixed list of steps or a function that derives
        the steps from the freshly loaded ride; the function is re-run on
        every retry. An empty plan leaves the ride untouched.
        """

        def mutate(ride: Ride) -> bool:
            steps = plan(ride) if callable(plan) else plan
            if not steps:
                return False
            now = self._clock.now()
            for step in steps:
                self._apply_step(ride, step, now)
            return True

        return self.update(ride_id, mutate, operation_name)

    def update(
        self,
        ride_id: str,
        mutate: Callable[[Ride], bool | None],
        operation_name: str = "update",
    ) -> Ride:
        """Run mutate on a copy of the stored ride and save it conditionally.

        mutate returns False to signal that nothing changed, in which case
        the stored ride is returned as is.
        """

        def attempt() -> Ride:
            current = self.get(ride_id)
            working = current.model_copy(deep=True)
            if mutate(working) is False:
                return current

            working.updated_at = self._clock.now()
            violations = working.invariant_violations()
            if violations:
                raise ValidationError(
                    f"Ride {ride_id} would violate its invariants",
                    details={"ride_id": ride_id, "violations": violations},
                )
            return self._repository.save(working, expected_version=current.version)

        with log_ride_context(ride_id):
            saved = with_retry_sync(
                attempt,
                self._retry_config,
                operation_name=f"{operation_name} ride {ride_id}",
            )
            logger.debug("%s committed at version %d", operation_name, saved.version)
        return saved

    def update_trip(self, ride_id: str, changes: TripUpdate, actor: str) -> Ride:
        """Change trip facts of a non-terminal ride. Pricing waits for finish."""
        updates = {
            name: value
            for name, value in changes.model_dump(exclude_unset=True).items()
            if value is not None or name in ("notes", "region")
        }

        def mutate(ride: Ride) -> bool:
            if ride.is_terminal:
                raise InvalidTransition(ride.ride_id, "update_trip", ride.status.value)
            trip = self._validate_trip({**ride.trip.model_dump(), **updates})
            changed = [name for name in updates if getattr(ride.trip, name) != getattr(trip, name)]
            if not changed:
                return False
            ride.trip = trip
            ride.action_history.append(
                TripUpdatedEntry(
                    performed_by=actor,
                    timestamp=self._clock.now(),
                    changed_fields=sorted(changed),
                )
            )
            return True

        return self.update(ride_id, mutate, "update_trip")

    def record_issue(self, ride_id: str, report: IssueReport, actor: str) -> Ride:
        def mutate(ride: Ride) -> None:
            now = self._clock.now()
            issue = Issue(
                type=report.type,
                description=report.description,
                severity=report.severity,
                reported_by=actor,
                reported_at=now,
            )
            ride.issues.append(issue)
            ride.action_history.append(
                IssueReportedEntry(
                    performed_by=actor,
                    timestamp=now,
                    issue_id=issue.issue_id,
                    issue_type=issue.type,
                    severity=issue.severity,
                )
            )

        return self.update(ride_id, mutate, "record_issue")

    def resolve_issue(self, ride_id: str, issue_id: str, resolution: str, actor: str) -> Ride:
        if not resolution or not resolution.strip():
            raise ValidationError("resolution is required", details={"issue_id": issue_id})

        def mutate(ride: Ride) -> None:
            issue = next((i for i in ride.issues if i.issue_id == issue_id), None)
            if issue is None:
                raise NotFoundError(
                    f"Issue {issue_id} not found on ride {ride_id}",
                    details={"ride_id": ride_id, "issue_id": issue_id},
                )
            if issue.resolved:
                raise StateError(
                    f"Issue {issue_id} is already resolved",
                    details={"ride_id": ride_id, "issue_id": issue_id},
                )
            now = self._clock.now()
            issue.resolved = True
            issue.resolved_by = actor
            issue.resolved_at = now
            issue.resolution = resolution.strip()
            ride.action_history.append(
                IssueResolvedEntry(
                    performed_by=actor,
                    timestamp=now,
                    issue_id=issue_id,
                    resolution=issue.resolution,
                )
            )

        return self.update(ride_id, mutate, "resolve_issue")

    def rate(self, ride_id: str, rating: int, actor: str, comment: str | None = None) -> Ride:
        """Record a 1-5 rating on a finished ride. A ride is rated once."""
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("rating must be an integer from 1 to 5", details={"rating": rating})
        comment = comment.strip() if comment and comment.strip() else None

        def mutate(ride: Ride) -> None:
            if ride.status != RideStatus.FINISHED:
                raise InvalidTransition(ride.ride_id, "rate", ride.status.value)
            if ride.rating is not None:
                raise StateError(
                    f"Ride {ride_id} is already rated",
                    details={"ride_id": ride_id, "rating": ride.rating},
                )
            ride.rating = rating
            ride.action_history.append(
                RatedEntry(
                    performed_by=actor,
                    timestamp=self._clock.now(),
                    rating=rating,
                    comment=comment,
                )
            )

        saved = self.update(ride_id, mutate, "rate")
        logger.info("Ride %s rated %d/5 by %s", ride_id, rating, actor)
        return saved

    def _validate_trip(self, data: dict[str, Any]) -> TripFacts:
        errors = []

        name = (data.get("customer_name") or "").strip()
        if len(name) < 2:
            errors.append("customer_name must be at least 2 characters")
        phone = _PHONE_SEPARATORS.sub("", data.get("customer_phone") or "")
        if not self._phone_pattern.fullmatch(phone):
            errors.append("customer_phone is not a valid mobile number")
        pickup = (data.get("pickup") or "").strip()
        destination = (data.get("destination") or "").strip()
        if not pickup:
            errors.append("pickup is required")
        if not destination:
            errors.append("destination is required")
        if data.get("distance_km", 0) < 0:
            errors.append("distance_km cannot be negative")
        if data.get("duration_min", 0) < 0:
            errors.append("duration_min cannot be negative")
        if data.get("surge_multiplier", 1.0) < 1.0:
            errors.append("surge_multiplier must be at least 1.0")

        if errors:
            raise ValidationError("Invalid ride request", details={"errors": errors})

        return TripFacts(
            customer_name=name,
            customer_phone=phone,
            pickup=pickup,
            destination=destination,
            notes=data.get("notes"),
            region=data.get("region"),
            distance_km=data.get("distance_km", 0.0),
            duration_min=data.get("duration_min", 0.0),
            surge_multiplier=data.get("surge_multiplier", 1.0),
        )

    def _apply_step(self, ride: Ride, step: Step, now: datetime) -> None:
        target = target_status(step.action, ride.status)
        if target is None:
            raise InvalidTransition(ride.ride_id, step.action.value, ride.status.value)

        details = step.details
        actor = step.actor
        location = details.location

        if step.action == RideAction.DISPATCH:
            ride.action_history.append(
                SentEntry(
                    performed_by=actor,
                    timestamp=now,
                    candidate_count=details.candidate_count or 0,
                )
            )
            ride.timeline.append(DispatchedEvent(timestamp=now, location=location))

        elif step.action == RideAction.LOCK:
            driver = self._require_driver(ride, step)
            if details.expires_at is None:
                raise ValidationError("lock requires expires_at", details={"ride_id": ride.ride_id})
            ride.action_history.append(
                LockedEntry(
                    performed_by=actor,
                    timestamp=now,
                    driver_id=driver.driver_id,
                    expires_at=details.expires_at,
                )
            )
            ride.timeline.append(
                DriverAcceptedEvent(timestamp=now, location=location, driver_id=driver.driver_id)
            )

        elif step.action == RideAction.ASSIGN:
            driver = self._require_driver(ride, step)
            last_lock = ride.last_lock_entry()
            if last_lock is None or last_lock.driver_id != driver.driver_id:
                raise ValidationError(
                    f"Driver {driver.driver_id} does not hold the lock on ride {ride.ride_id}",
                    details={"ride_id": ride.ride_id, "driver_id": driver.driver_id},
                )
            ride.driver_id = driver.driver_id
            ride.driver_name = driver.name
            ride.driver_phone = driver.phone
            ride.action_history.append(
                AssignedEntry(
                    performed_by=actor,
                    timestamp=now,
                    driver_id=driver.driver_id,
                    driver_name=driver.name,
                )
            )
            ride.timeline.append(
                DriverAssignedEvent(timestamp=now, location=location, driver_id=driver.driver_id)
            )

        elif step.action == RideAction.RELEASE:
            last_lock = ride.last_lock_entry()
            reason = details.reason or "released"
            ride.action_history.append(
                RedispatchedEntry(
                    performed_by=actor,
                    timestamp=now,
                    previous_driver_id=last_lock.driver_id if last_lock else None,
                    reason=reason,
                )
            )
            ride.timeline.append(
                RideRedispatchedEvent(timestamp=now, location=location, reason=reason)
            )

        elif step.action == RideAction.APPROVE:
            ride.action_history.append(
                ApprovedEntry(performed_by=actor, timestamp=now, note=details.note)
            )
            ride.timeline.append(RideApprovedEvent(timestamp=now, location=location))

        elif step.action == RideAction.ENROUTE:
            ride.action_history.append(EnrouteEntry(performed_by=actor, timestamp=now))
            ride.timeline.append(DriverEnrouteEvent(timestamp=now, location=location))

        elif step.action == RideAction.ARRIVE:
            ride.action_history.append(ArrivedEntry(performed_by=actor, timestamp=now))
            ride.timeline.append(DriverArrivedEvent(timestamp=now, location=location))

        elif step.action == RideAction.FINISH:
            repriced = self._reprice_if_changed(ride)
            ride.completed_at = now
            ride.action_history.append(
                CompletedEntry(
                    performed_by=actor,
                    timestamp=now,
                    final_total=ride.price,
                    repriced=repriced,
                )
            )
            ride.timeline.append(
                RideCompletedEvent(timestamp=now, location=location, final_total=ride.price)
            )

        elif step.action == RideAction.REDISPATCH:
            reason = details.reason or "redispatched"
            previous_driver_id = ride.driver_id
            self._clear_driver(ride)
            ride.action_history.append(
                RedispatchedEntry(
                    performed_by=actor,
                    timestamp=now,
                    previous_driver_id=previous_driver_id,
                    reason=reason,
                )
            )
            ride.timeline.append(
                RideRedispatchedEvent(timestamp=now, location=location, reason=reason)
            )

        elif step.action == RideAction.CANCEL:
            reason = (details.reason or "").strip()
            if not reason:
                raise ValidationError(
                    "cancel requires a reason", details={"ride_id": ride.ride_id}
                )
            previous_driver_id = ride.driver_id
            self._clear_driver(ride)
            ride.cancel_reason = reason
            ride.cancelled_at = now
            if ride.recurring is not None:
                ride.recurring.active = False
            ride.action_history.append(
                CancelledEntry(
                    performed_by=actor,
                    timestamp=now,
                    reason=reason,
                    previous_driver_id=previous_driver_id,
                )
            )
            ride.timeline.append(
                RideCancelledEvent(timestamp=now, location=location, reason=reason)
            )

        previous_status = ride.status
        ride.status = target
        logger.info(
            "Ride %s: %s -> %s by %s",
            ride.ride_id,
            previous_status.value,
            target.value,
            actor,
        )

    def _require_driver(self, ride: Ride, step: Step) -> DriverInfo:
        if step.details.driver is None:
            raise ValidationError(
                f"{step.action.value} requires driver details",
                details={"ride_id": ride.ride_id, "action": step.action.value},
            )
        return step.details.driver

    def _clear_driver(self, ride: Ride) -> None:
        ride.driver_id = None
        ride.driver_name = None
        ride.driver_phone = None

    def _reprice_if_changed(self, ride: Ride) -> bool:
        if ride.trip.pricing_inputs() == ride.pricing_details.inputs:
            return False
        # Rates as of now, dispatch time as of creation.
        details = self._calculator.compute(
            ride.trip,
            self._settings_provider.pricing_rates(),
            ride.pricing_details.calculated_at,
        )
        ride.pricing_details = details
        ride.price = details.final_total
        ride.commission_amount = commission_for(ride.price, ride.commission_rate)
        return True
