from datetime import datetime, timedelta

import pytest

from ride_dispatch.core.exceptions import (
    InvalidTransition,
    NotFoundError,
    StateError,
    ValidationError,
    VersionConflict,
)
from ride_dispatch.db.repositories import InMemoryRideRepository
from ride_dispatch.history import (
    AssignedEntry,
    CancelledEntry,
    CompletedEntry,
    CreatedEntry,
    LockedEntry,
    RatedEntry,
    RedispatchedEntry,
    SentEntry,
    TripUpdatedEntry,
)
from ride_dispatch.issues import IssueReport, IssueSeverity, IssueType
from ride_dispatch.lifecycle import RideLifecycleEngine, Step, TransitionDetails, TripUpdate
from ride_dispatch.ride import DriverInfo, RideAction, RideStatus
from tests.factories import T0, ride_request

DRIVER = DriverInfo(driver_id="d1", name="Avi Cohen", phone="0521111111")
OTHER_DRIVER = DriverInfo(driver_id="d2", name="Noa Levi", phone="0532222222")
TO_FINISH = (RideAction.APPROVE, RideAction.ENROUTE, RideAction.ARRIVE, RideAction.FINISH)


def _assign(engine, ride_id, driver=DRIVER):
    """Drive a ride from created or sent to assigned."""
    ride = engine.get(ride_id)
    steps = []
    if ride.status == RideStatus.CREATED:
        steps.append(Step(RideAction.DISPATCH, "system:dispatch"))
    lock = TransitionDetails(driver=driver, expires_at=T0 + timedelta(hours=1))
    steps.append(Step(RideAction.LOCK, f"driver:{driver.driver_id}", lock))
    assign = TransitionDetails(driver=driver)
    steps.append(Step(RideAction.ASSIGN, f"driver:{driver.driver_id}", assign))
    return engine.apply(ride_id, steps)


def _advance(engine, ride_id, *actions):
    ride = None
    for action in actions:
        ride = engine.transition(ride_id, action, "driver:d1")
    return ride


class FlakyRepository(InMemoryRideRepository):
    """Raises VersionConflict on the first ``failures`` conditional saves."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def save(self, ride, expected_version):
        if expected_version is not None:
            self.attempts += 1
            if self.attempts <= self.failures:
                raise VersionConflict("simulated concurrent write")
        return super().save(ride, expected_version)


@pytest.mark.unit
class TestCreate:
    def test_prices_and_stores_new_ride(self, engine):
        ride = engine.create(ride_request(), "api")

        assert ride.status == RideStatus.CREATED
        assert ride.ride_number == 1
        assert ride.version == 1
        assert ride.price == 55.0
        assert ride.commission_rate == 0.10
        assert ride.commission_amount == 5.5
        assert ride.pricing_details.calculated_at == T0
        assert ride.created_at == ride.updated_at == T0
        assert isinstance(ride.action_history[0], CreatedEntry)
        assert ride.action_history[0].performed_by == "api"
        assert ride.timeline[0].event == "created"
        assert engine.get(ride.ride_id) == ride

    def test_ride_numbers_increase(self, engine):
        numbers = [engine.create(ride_request(), "api").ride_number for _ in range(3)]
        assert numbers == [1, 2, 3]

    def test_phone_normalized(self, engine):
        ride = engine.create(ride_request(customer_phone="+972 52 123 4567"), "api")
        assert ride.trip.customer_phone == "+972521234567"

    def test_explicit_price_overrides_calculation(self, engine):
        ride = engine.create(ride_request(price=42.499), "api")

        assert ride.price == 42.5
        assert ride.pricing_details.final_total == 55.0
        assert ride.commission_amount == 4.25

    def test_collects_all_validation_errors(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            engine.create(
                ride_request(customer_name=" A ", customer_phone="12345", pickup="  "),
                "api",
            )

        errors = exc_info.value.details["errors"]
        assert len(errors) == 3
        assert any("customer_name" in e for e in errors)
        assert any("customer_phone" in e for e in errors)
        assert any("pickup" in e for e in errors)

    def test_rejects_negative_values(self, engine):
        with pytest.raises(ValidationError):
            engine.create(ride_request(distance_km=-1), "api")
        with pytest.raises(ValidationError):
            engine.create(ride_request(surge_multiplier=0.5), "api")
        with pytest.raises(ValidationError, match="price"):
            engine.create(ride_request(price=-5), "api")

    def test_rejects_naive_start(self, engine):
        with pytest.raises(ValidationError, match="starts_at"):
            engine.create(ride_request(starts_at=datetime(2026, 3, 9, 9, 0)), "api")

    def test_invalid_request_stores_nothing(self, engine, repository):
        with pytest.raises(ValidationError):
            engine.create(ride_request(destination=""), "api")
        assert len(repository) == 0

    def test_get_unknown_ride(self, engine):
        with pytest.raises(NotFoundError):
            engine.get("missing")


@pytest.mark.unit
class TestTransitions:
    def test_full_lifecycle(self, engine, clock):
        ride = engine.create(ride_request(), "api")
        _assign(engine, ride.ride_id)

        ride = engine.transition(
            ride.ride_id, RideAction.APPROVE, "ops", TransitionDetails(note="VIP")
        )
        assert ride.status == RideStatus.APPROVED
        assert ride.action_history[-1].note == "VIP"

        clock.advance(minutes=30)
        ride = _advance(engine, ride.ride_id, *TO_FINISH[1:])

        assert ride.status == RideStatus.FINISHED
        assert ride.completed_at == T0 + timedelta(minutes=30)
        assert ride.driver_id == "d1"
        assert ride.driver_name == "Avi Cohen"
        assert isinstance(ride.action_history[-1], CompletedEntry)
        assert ride.action_history[-1].final_total == 55.0
        assert not ride.action_history[-1].repriced
        assert [e.event for e in ride.timeline][-1] == "ride_completed"

    def test_dispatch_lock_assign_entries(self, engine):
        ride = engine.create(ride_request(), "api")
        ride = _assign(engine, ride.ride_id)

        kinds = [type(entry) for entry in ride.action_history]
        assert kinds == [CreatedEntry, SentEntry, LockedEntry, AssignedEntry]
        assert ride.version == 2

    @pytest.mark.critical
    def test_invalid_transition_leaves_ride_untouched(self, engine):
        ride = engine.create(ride_request(), "api")
        before = engine.get(ride.ride_id).model_dump_json()

        with pytest.raises(InvalidTransition) as exc_info:
            engine.transition(ride.ride_id, RideAction.APPROVE, "ops")

        assert exc_info.value.status == "created"
        assert exc_info.value.action == "approve"
        assert engine.get(ride.ride_id).model_dump_json() == before

    @pytest.mark.critical
    def test_failed_step_in_plan_commits_nothing(self, engine):
        ride = engine.create(ride_request(), "api")
        before = engine.get(ride.ride_id).model_dump_json()

        with pytest.raises(ValidationError):
            engine.apply(
                ride.ride_id,
                [
                    Step(RideAction.DISPATCH, "system:dispatch"),
                    Step(RideAction.LOCK, "driver:d1", TransitionDetails(driver=DRIVER)),
                ],
            )

        assert engine.get(ride.ride_id).model_dump_json() == before

    def test_assign_requires_matching_lock(self, engine):
        ride = engine.create(ride_request(), "api")
        lock = TransitionDetails(driver=DRIVER, expires_at=T0 + timedelta(minutes=1))
        engine.apply(
            ride.ride_id,
            [
                Step(RideAction.DISPATCH, "system:dispatch"),
                Step(RideAction.LOCK, "driver:d1", lock),
            ],
        )

        with pytest.raises(ValidationError, match="does not hold the lock"):
            engine.transition(
                ride.ride_id, RideAction.ASSIGN, "driver:d2", TransitionDetails(driver=OTHER_DRIVER)
            )

    @pytest.mark.critical
    def test_history_is_append_only(self, engine):
        ride = engine.create(ride_request(), "api")
        snapshots = [engine.get(ride.ride_id).action_history]

        _assign(engine, ride.ride_id)
        snapshots.append(engine.get(ride.ride_id).action_history)
        engine.transition(ride.ride_id, RideAction.APPROVE, "ops")
        snapshots.append(engine.get(ride.ride_id).action_history)

        for earlier, later in zip(snapshots, snapshots[1:]):
            assert len(later) > len(earlier)
            assert later[: len(earlier)] == earlier

    def test_empty_plan_does_not_save(self, engine):
        ride = engine.create(ride_request(), "api")

        assert engine.apply(ride.ride_id, lambda current: []).version == ride.version


@pytest.mark.unit
class TestCancel:
    def test_requires_reason(self, engine):
        ride = engine.create(ride_request(), "api")

        with pytest.raises(ValidationError, match="reason"):
            engine.transition(ride.ride_id, RideAction.CANCEL, "ops", TransitionDetails(reason=" "))
        assert engine.get(ride.ride_id).status == RideStatus.CREATED

    def test_cancel_assigned_ride_clears_driver(self, engine, clock):
        ride = engine.create(ride_request(), "api")
        _assign(engine, ride.ride_id)
        clock.advance(minutes=5)

        ride = engine.transition(
            ride.ride_id, RideAction.CANCEL, "ops", TransitionDetails(reason="customer no-show")
        )

        assert ride.status == RideStatus.CANCELLED
        assert ride.cancel_reason == "customer no-show"
        assert ride.cancelled_at == T0 + timedelta(minutes=5)
        assert ride.driver_id is None
        assert ride.completed_at is None
        entry = ride.action_history[-1]
        assert isinstance(entry, CancelledEntry)
        assert entry.previous_driver_id == "d1"

    @pytest.mark.critical
    def test_terminal_rides_accept_no_actions(self, engine):
        ride = engine.create(ride_request(), "api")
        engine.transition(ride.ride_id, RideAction.CANCEL, "ops", TransitionDetails(reason="dup"))

        for action in RideAction:
            with pytest.raises(InvalidTransition):
                engine.transition(
                    ride.ride_id, action, "ops", TransitionDetails(reason="again", driver=DRIVER)
                )


@pytest.mark.unit
class TestRedispatch:
    def test_redispatch_returns_ride_to_sent(self, engine):
        ride = engine.create(ride_request(), "api")
        _assign(engine, ride.ride_id)

        ride = engine.transition(
            ride.ride_id, RideAction.REDISPATCH, "ops", TransitionDetails(reason="driver sick")
        )

        assert ride.status == RideStatus.SENT
        assert ride.driver_id is None
        entry = ride.action_history[-1]
        assert isinstance(entry, RedispatchedEntry)
        assert entry.previous_driver_id == "d1"
        assert entry.reason == "driver sick"
        assert ride.redispatch_count() == 1

    def test_count_grows_with_each_redispatch(self, engine):
        ride = engine.create(ride_request(), "api")
        for driver in (DRIVER, OTHER_DRIVER):
            _assign(engine, ride.ride_id, driver)
            ride = engine.transition(
                ride.ride_id, RideAction.REDISPATCH, "ops", TransitionDetails(reason="swap")
            )

        assert ride.redispatch_count() == 2

    def test_not_allowed_after_arrival(self, engine):
        ride = engine.create(ride_request(), "api")
        _assign(engine, ride.ride_id)
        _advance(engine, ride.ride_id, RideAction.APPROVE, RideAction.ENROUTE, RideAction.ARRIVE)

        with pytest.raises(InvalidTransition):
            engine.transition(
                ride.ride_id, RideAction.REDISPATCH, "ops", TransitionDetails(reason="late")
            )


@pytest.mark.unit
class TestTripUpdates:
    def test_update_records_changed_fields(self, engine):
        ride = engine.create(ride_request(), "api")

        ride = engine.update_trip(
            ride.ride_id,
            TripUpdate(destination="Tel Aviv Port", distance_km=20.0, pickup=None),
            "ops",
        )

        assert ride.trip.destination == "Tel Aviv Port"
        assert ride.trip.pickup == "Herzl 1, Haifa"
        entry = ride.action_history[-1]
        assert isinstance(entry, TripUpdatedEntry)
        assert entry.changed_fields == ["destination", "distance_km"]
        assert ride.price == 55.0

    def test_unchanged_values_do_not_save(self, engine):
        ride = engine.create(ride_request(), "api")

        updated = engine.update_trip(ride.ride_id, TripUpdate(pickup="Herzl 1, Haifa"), "ops")

        assert updated.version == ride.version

    def test_notes_can_be_cleared(self, engine):
        ride = engine.create(ride_request(notes="gate code 1234"), "api")

        ride = engine.update_trip(ride.ride_id, TripUpdate(notes=None), "ops")

        assert ride.trip.notes is None

    def test_invalid_update_rejected(self, engine):
        ride = engine.create(ride_request(), "api")

        with pytest.raises(ValidationError):
            engine.update_trip(ride.ride_id, TripUpdate(customer_phone="abc"), "ops")

    def test_terminal_ride_cannot_be_updated(self, engine):
        ride = engine.create(ride_request(), "api")
        engine.transition(ride.ride_id, RideAction.CANCEL, "ops", TransitionDetails(reason="dup"))

        with pytest.raises(InvalidTransition):
            engine.update_trip(ride.ride_id, TripUpdate(pickup="Elsewhere"), "ops")

    @pytest.mark.critical
    def test_finish_reprices_changed_trip(self, engine):
        ride = engine.create(ride_request(), "api")
        _assign(engine, ride.ride_id)
        engine.update_trip(ride.ride_id, TripUpdate(distance_km=20.0), "ops")

        ride = _advance(engine, ride.ride_id, *TO_FINISH)

        # 15 + 20 * 3 + 20 * 0.5, priced as of the original dispatch time.
        assert ride.price == 85.0
        assert ride.commission_amount == 8.5
        assert ride.pricing_details.calculated_at == T0
        assert ride.action_history[-1].repriced
        assert ride.action_history[-1].final_total == 85.0

    def test_finish_keeps_explicit_price_without_changes(self, engine):
        ride = engine.create(ride_request(price=40.0), "api")
        _assign(engine, ride.ride_id)

        ride = _advance(engine, ride.ride_id, *TO_FINISH)

        assert ride.price == 40.0
        assert not ride.action_history[-1].repriced


@pytest.mark.unit
class TestIssues:
    def test_record_and_resolve(self, engine, clock):
        ride = engine.create(ride_request(), "api")
        report = IssueReport(
            type=IssueType.CUSTOMER_COMPLAINT,
            description="Driver was rude",
            severity=IssueSeverity.HIGH,
        )

        ride = engine.record_issue(ride.ride_id, report, "support")
        issue = ride.issues[0]
        assert issue.reported_by == "support"
        assert not issue.resolved
        assert ride.action_history[-1].issue_id == issue.issue_id

        clock.advance(hours=1)
        ride = engine.resolve_issue(ride.ride_id, issue.issue_id, " refunded ", "manager")

        resolved = ride.issues[0]
        assert resolved.resolved
        assert resolved.resolution == "refunded"
        assert resolved.resolved_by == "manager"
        assert resolved.resolved_at == T0 + timedelta(hours=1)
        assert ride.status == RideStatus.CREATED

    def test_resolve_errors(self, engine):
        ride = engine.create(ride_request(), "api")
        report = IssueReport(type=IssueType.OTHER, description="Lost umbrella")
        issue_id = engine.record_issue(ride.ride_id, report, "support").issues[0].issue_id

        with pytest.raises(ValidationError):
            engine.resolve_issue(ride.ride_id, issue_id, "  ", "manager")
        with pytest.raises(NotFoundError):
            engine.resolve_issue(ride.ride_id, "nope", "done", "manager")

        engine.resolve_issue(ride.ride_id, issue_id, "returned", "manager")
        with pytest.raises(StateError):
            engine.resolve_issue(ride.ride_id, issue_id, "returned", "manager")

    def test_issues_allowed_on_terminal_rides(self, engine):
        ride = engine.create(ride_request(), "api")
        engine.transition(ride.ride_id, RideAction.CANCEL, "ops", TransitionDetails(reason="dup"))

        report = IssueReport(type=IssueType.PAYMENT_DISPUTE, description="Charged twice")
        ride = engine.record_issue(ride.ride_id, report, "support")

        assert len(ride.issues) == 1


@pytest.mark.unit
class TestRating:
    def _finished(self, engine):
        ride = engine.create(ride_request(), "api")
        _assign(engine, ride.ride_id)
        return _advance(engine, ride.ride_id, *TO_FINISH)

    def test_rate_finished_ride(self, engine, clock):
        ride = self._finished(engine)
        clock.advance(minutes=10)

        rated = engine.rate(ride.ride_id, 4, "customer", comment="  Friendly driver ")

        assert rated.rating == 4
        assert rated.version == ride.version + 1
        entry = rated.action_history[-1]
        assert isinstance(entry, RatedEntry)
        assert entry.rating == 4
        assert entry.comment == "Friendly driver"
        assert entry.performed_by == "customer"
        assert entry.timestamp == T0 + timedelta(minutes=10)
        assert rated.invariant_violations() == []

    def test_blank_comment_dropped(self, engine):
        ride = self._finished(engine)

        rated = engine.rate(ride.ride_id, 5, "customer", comment="   ")

        assert rated.action_history[-1].comment is None

    def test_unfinished_ride_cannot_be_rated(self, engine):
        ride = engine.create(ride_request(), "api")
        _assign(engine, ride.ride_id)

        with pytest.raises(InvalidTransition) as exc_info:
            engine.rate(ride.ride_id, 5, "customer")

        assert exc_info.value.action == "rate"
        assert exc_info.value.status == "assigned"
        assert engine.get(ride.ride_id).rating is None

    @pytest.mark.parametrize("rating", [0, 6, -1, True, 4.5])
    def test_rating_out_of_range(self, engine, rating):
        ride = self._finished(engine)

        with pytest.raises(ValidationError, match="from 1 to 5"):
            engine.rate(ride.ride_id, rating, "customer")

    def test_ride_rated_once(self, engine):
        ride = self._finished(engine)
        engine.rate(ride.ride_id, 3, "customer")

        with pytest.raises(StateError, match="already rated"):
            engine.rate(ride.ride_id, 5, "customer")
        assert engine.get(ride.ride_id).rating == 3


@pytest.mark.unit
class TestVersionConflicts:
    def test_conflict_is_retried_from_fresh_load(self, settings_provider, clock, dispatch_settings):
        repository = FlakyRepository(failures=2)
        engine = RideLifecycleEngine(
            repository, settings_provider, clock=clock, dispatch_settings=dispatch_settings
        )
        ride = engine.create(ride_request(), "api")

        ride = engine.transition(ride.ride_id, RideAction.DISPATCH, "system:dispatch")

        assert ride.status == RideStatus.SENT
        assert repository.attempts == 3
        assert sum(isinstance(e, SentEntry) for e in ride.action_history) == 1

    def test_conflict_surfaces_after_retries(self, settings_provider, clock, dispatch_settings):
        repository = FlakyRepository(failures=100)
        engine = RideLifecycleEngine(
            repository, settings_provider, clock=clock, dispatch_settings=dispatch_settings
        )
        ride = engine.create(ride_request(), "api")

        with pytest.raises(VersionConflict):
            engine.transition(ride.ride_id, RideAction.DISPATCH, "system:dispatch")

        assert repository.attempts == dispatch_settings.version_retry_attempts

    def test_stale_write_rejected_by_repository(self, engine, repository):
        ride = engine.create(ride_request(), "api")
        engine.transition(ride.ride_id, RideAction.DISPATCH, "system:dispatch")

        with pytest.raises(VersionConflict):
            repository.save(ride, expected_version=ride.version)
