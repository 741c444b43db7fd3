"""Materializes occurrences of recurring template rides."""

import logging
from datetime import datetime
from uuid import uuid4

from ride_dispatch.core.clock import Clock, SystemClock
from ride_dispatch.core.exceptions import (
    NotFoundError,
    RecurrenceExhausted,
    RideDispatchError,
    ValidationError,
    VersionConflict,
)
from ride_dispatch.lifecycle import RideLifecycleEngine, RideRequest
from ride_dispatch.ports import SettingsProvider
from ride_dispatch.recurrence.rules import Occurrence
from ride_dispatch.ride import OccurrenceRef, Ride
from ride_dispatch.ride_logging import log_context

logger = logging.getLogger(__name__)

RECURRENCE_ACTOR = "system:recurrence"


class RecurrenceScheduler:
    """Turns due template instants into concrete rides.

    An instant is claimed on the template first (occurrence recorded with a
    pre-allocated ride id, counters advanced) and the ride is created second,
    so a retried or concurrent call never produces two rides for one instant.
    """

    def __init__(
        self,
        engine: RideLifecycleEngine,
        settings_provider: SettingsProvider,
        clock: Clock | None = None,
    ):
        self._engine = engine
        self._settings_provider = settings_provider
        self._clock = clock or SystemClock()

    def due_templates(self, as_of: datetime | None = None) -> list[Ride]:
        return self._engine.list_due_templates(as_of or self._clock.now())

    def materialize(
        self,
        template_id: str,
        as_of: datetime | None = None,
        scheduled_for: datetime | None = None,
    ) -> Ride:
        """Create the ride for the template's next due instant.

        With ``scheduled_for`` naming one of the template's recent claimed
        instants, the ride for that instant is returned instead. A claimed
        instant whose ride was never created is completed before anything
        new is claimed.

        Raises:
            ValidationError: the ride is not a template, or nothing is due yet
            RecurrenceExhausted: the template is inert
        """
        as_of = as_of or self._clock.now()

        with log_context(template_id=template_id):
            template = self._engine.get(template_id)
            if template.recurring is None:
                raise ValidationError(
                    f"Ride {template_id} is not a recurring template",
                    details={"template_id": template_id},
                )

            if scheduled_for is not None:
                occurrence = template.recurring.occurrence_at(scheduled_for)
                if occurrence is not None:
                    return self._ensure_ride(template, occurrence)

            # Every claim is completed before the next one is made, so only the
            # latest claim can be missing its ride.
            latest = template.recurring.latest_occurrence
            if latest is not None and self._find(latest.ride_id) is None:
                logger.info("Completing interrupted occurrence %s", latest.scheduled_for)
                return self._ensure_ride(template, latest)

            occurrence = self._claim(template_id, as_of)
            template = self._engine.get(template_id)
            return self._ensure_ride(template, occurrence)

    def run_due(self, as_of: datetime | None = None) -> list[Ride]:
        """Materialize one instant of every due template.

        Templates that fail are logged and skipped; templates with several
        overdue instants catch up on subsequent runs.
        """
        as_of = as_of or self._clock.now()
        created = []

        for template in self.due_templates(as_of):
            try:
                created.append(self.materialize(template.ride_id, as_of))
            except RideDispatchError as e:
                logger.warning("Skipping template %s: %s", template.ride_id, e.message)

        if created:
            logger.info("Materialized %d recurring rides", len(created))
        return created

    def _claim(self, template_id: str, as_of: datetime) -> Occurrence:
        tz = self._settings_provider.timezone()
        target: datetime | None = None
        claimed: Occurrence | None = None

        def claim(ride: Ride) -> bool:
            nonlocal target, claimed
            template = ride.recurring
            assert template is not None

            if target is not None:
                existing = template.occurrence_at(target)
                if existing is not None:
                    # Claimed by a concurrent caller between our attempts.
                    claimed = existing
                    return False

            if template.is_inert:
                raise RecurrenceExhausted(
                    f"Template {template_id} has no occurrences left",
                    details={"template_id": template_id},
                )
            if template.next_occurrence > as_of:
                raise ValidationError(
                    f"Template {template_id} is not due until {template.next_occurrence.isoformat()}",
                    details={
                        "template_id": template_id,
                        "next_occurrence": template.next_occurrence.isoformat(),
                    },
                )

            target = template.next_occurrence
            template.advance(template.next_occurrence, str(uuid4()), tz)
            claimed = template.occurrences[-1]
            return True

        self._engine.update(template_id, claim, "materialize")
        assert claimed is not None
        return claimed

    def _ensure_ride(self, template: Ride, occurrence: Occurrence) -> Ride:
        existing = self._find(occurrence.ride_id)
        if existing is not None:
            return existing

        trip = template.trip
        explicit_price = template.price != template.pricing_details.final_total
        request = RideRequest(
            customer_name=trip.customer_name,
            customer_phone=trip.customer_phone,
            pickup=trip.pickup,
            destination=trip.destination,
            notes=trip.notes,
            region=trip.region,
            distance_km=trip.distance_km,
            duration_min=trip.duration_min,
            surge_multiplier=trip.surge_multiplier,
            price=template.price if explicit_price else None,
        )
        try:
            ride = self._engine.create(
                request,
                RECURRENCE_ACTOR,
                ride_id=occurrence.ride_id,
                occurrence_of=OccurrenceRef(
                    template_id=template.ride_id,
                    scheduled_for=occurrence.scheduled_for,
                ),
            )
        except VersionConflict:
            # Created concurrently for the same instant.
            return self._engine.get(occurrence.ride_id)

        logger.info(
            "Materialized ride #%d for %s from template %s",
            ride.ride_number,
            occurrence.scheduled_for.isoformat(),
            template.ride_id,
        )
        return ride

    def _find(self, ride_id: str) -> Ride | None:
        try:
            return self._engine.get(ride_id)
        except NotFoundError:
            return None
