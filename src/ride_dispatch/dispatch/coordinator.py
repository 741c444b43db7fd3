"""Offer locks: keeps two drivers from being assigned the same ride."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ride_dispatch.core.clock import Clock, SystemClock
from ride_dispatch.core.exceptions import (
    AlreadyLocked,
    LockExpired,
    NotFoundError,
    StateError,
    ValidationError,
)
from ride_dispatch.core.keyed_lock import KeyedLock
from ride_dispatch.dispatch.locks import DispatchLock, LockTable
from ride_dispatch.history import RedispatchedEntry
from ride_dispatch.lifecycle import RideLifecycleEngine, Step, TransitionDetails
from ride_dispatch.ports import BroadcastChannel, DeliveryOutcome, DriverDirectory
from ride_dispatch.ride import (
    ACTIVE_ASSIGNMENT_STATUSES,
    DRIVER_BOUND_STATUSES,
    DriverInfo,
    Ride,
    RideAction,
    RideStatus,
)
from ride_dispatch.ride_logging import log_ride_context
from ride_dispatch.settings import DispatchSettings

logger = logging.getLogger(__name__)

LOCK_EXPIRY_ACTOR = "system:lock-expiry"
DISPATCH_ACTOR = "system:dispatch"

# Rides whose offer is still open, so a remembered offer ttl may still be used.
OPEN_OFFER_STATUSES = frozenset({RideStatus.SENT, RideStatus.LOCKED})


def driver_actor(driver_id: str) -> str:
    return f"driver:{driver_id}"


def _taken_by_other(ride: Ride, driver_id: str) -> bool:
    return (
        ride.status in DRIVER_BOUND_STATUSES
        and not ride.is_terminal
        and ride.driver_id != driver_id
    )


@dataclass
class OfferResult:
    ride: Ride
    deliveries: dict[str, DeliveryOutcome] = field(default_factory=dict)

    @property
    def delivered(self) -> list[str]:
        return [d for d, outcome in self.deliveries.items() if outcome == DeliveryOutcome.DELIVERED]


class DispatchCoordinator:
    """Offers rides to drivers and arbitrates who gets them.

    A ride is held by at most one driver at a time through a time-bounded
    lock in the LockTable. A driver is busy with at most one ride, locked or
    assigned, as seen through the directory. Work for one driver serializes
    on a per-driver mutex, ride writes go through the engine's optimistic
    versioning. Expired locks are reverted lazily on access and by
    expire_stale_locks().
    """

    def __init__(
        self,
        engine: RideLifecycleEngine,
        lock_table: LockTable,
        directory: DriverDirectory,
        broadcast: BroadcastChannel,
        clock: Clock | None = None,
        dispatch_settings: DispatchSettings | None = None,
    ):
        dispatch_settings = dispatch_settings or DispatchSettings()
        self._engine = engine
        self._locks = lock_table
        self._directory = directory
        self._broadcast = broadcast
        self._clock = clock or SystemClock()
        self._default_ttl = timedelta(seconds=dispatch_settings.lock_ttl_seconds)
        self._driver_mutex = KeyedLock()
        self._offer_ttls: dict[str, timedelta] = {}
        self._offer_ttls_lock = threading.Lock()

    @property
    def lock_table(self) -> LockTable:
        return self._locks

    def offer(
        self,
        ride_id: str,
        candidate_driver_ids: list[str] | None = None,
        ttl: timedelta | None = None,
        actor: str = DISPATCH_ACTOR,
    ) -> OfferResult:
        """Move the ride to sent and notify the candidates.

        Candidates locked on or assigned to another ride are skipped. Without
        explicit candidates, the active drivers of the ride's region are used.
        ``ttl`` becomes the lock duration for drivers accepting this offer.
        """
        if ttl is not None:
            self._check_ttl(ttl)

        with log_ride_context(ride_id):
            self._settle_expired(ride_id)
            ride = self._engine.get(ride_id)

            if candidate_driver_ids is None:
                candidates = self._directory.list_active(ride.trip.region)
            else:
                candidates = list(dict.fromkeys(candidate_driver_ids))

            deliveries: dict[str, DeliveryOutcome] = {}
            eligible = []
            for driver_id in candidates:
                # No driver mutex here, so stale holds are only ignored, not pruned.
                if self._busy_ride(driver_id, ride_id, prune=False) is not None:
                    deliveries[driver_id] = DeliveryOutcome.SKIPPED
                else:
                    eligible.append(driver_id)

            def plan(current: Ride) -> list[Step]:
                if current.status == RideStatus.SENT:
                    return []
                details = TransitionDetails(candidate_count=len(eligible))
                return [Step(RideAction.DISPATCH, actor, details)]

            ride = self._engine.apply(ride_id, plan, "dispatch")

            if ttl is not None:
                with self._offer_ttls_lock:
                    self._offer_ttls[ride_id] = ttl

            deliveries.update(self._notify(ride, eligible))
            return OfferResult(ride=ride, deliveries=deliveries)

    def acquire(self, ride_id: str, driver_id: str, ttl: timedelta | None = None) -> DispatchLock:
        """Take the offer lock for driver and move the ride to locked."""
        ttl = self._ttl_for(ride_id, ttl)

        with log_ride_context(ride_id, driver_id=driver_id), self._driver_mutex.hold(driver_id):
            driver = self._require_driver(driver_id)
            ride = self._engine.get(ride_id)
            if _taken_by_other(ride, driver_id):
                self._raise_taken(ride, driver_id)
            self._check_driver_free(driver_id, ride_id)

            lock, created = self._take_lock(ride_id, driver_id, ttl)
            try:
                self._engine.apply(
                    ride_id,
                    lambda current: self._lock_steps(current, lock, driver),
                    "lock",
                )
            except Exception as e:
                if created or isinstance(e, StateError):
                    self._locks.release(ride_id, driver_id)
                raise

            logger.info("Driver %s locked ride %s until %s", driver_id, ride_id, lock.expires_at)
            return lock

    def confirm(self, ride_id: str, driver_id: str) -> Ride:
        """Assign the ride to driver: lock (if needed) and assign in one commit.

        Idempotent for a driver the ride is already assigned to.
        """
        ttl = self._ttl_for(ride_id, None)

        with log_ride_context(ride_id, driver_id=driver_id), self._driver_mutex.hold(driver_id):
            driver = self._require_driver(driver_id)
            ride = self._engine.get(ride_id)
            if ride.status in DRIVER_BOUND_STATUSES and ride.driver_id == driver_id:
                if ride.status in ACTIVE_ASSIGNMENT_STATUSES:
                    self._directory.record_assignment(driver_id, ride_id)
                return ride
            if _taken_by_other(ride, driver_id):
                self._raise_taken(ride, driver_id)
            self._check_driver_free(driver_id, ride_id)

            lock, created = self._take_lock(ride_id, driver_id, ttl)
            try:
                ride = self._engine.apply(
                    ride_id,
                    lambda current: self._confirm_steps(current, lock, driver),
                    "confirm",
                )
            except Exception as e:
                if created or isinstance(e, StateError):
                    self._locks.release(ride_id, driver_id)
                raise

            # Recorded before the lock goes so the driver never looks free in between.
            self._directory.record_assignment(driver_id, ride_id)
            self._locks.release(ride_id, driver_id)
            with self._offer_ttls_lock:
                self._offer_ttls.pop(ride_id, None)

            logger.info("Ride %s assigned to driver %s", ride_id, driver_id)
            return ride

    def release(self, ride_id: str, driver_id: str) -> Ride | None:
        """Decline a held ride: free the lock and return the ride to sent.

        Returns None when the driver holds no lock on the ride.
        """
        with log_ride_context(ride_id, driver_id=driver_id), self._driver_mutex.hold(driver_id):
            self._settle_expired(ride_id)
            lock = self._locks.active_for_ride(ride_id, self._clock.now())
            if lock is None:
                return None
            if lock.driver_id != driver_id:
                raise AlreadyLocked(
                    f"Ride {ride_id} is locked by another driver",
                    details={"ride_id": ride_id, "driver_id": driver_id},
                )

            def plan(current: Ride) -> list[Step]:
                if not self._holds_recorded_lock(current, lock):
                    return []
                details = TransitionDetails(reason="declined")
                return [Step(RideAction.RELEASE, driver_actor(driver_id), details)]

            ride = self._engine.apply(ride_id, plan, "release")
            self._locks.release(ride_id, driver_id)
            logger.info("Driver %s declined ride %s", driver_id, ride_id)
            return ride

    def redispatch(
        self,
        ride_id: str,
        actor: str,
        reason: str,
        candidate_driver_ids: list[str] | None = None,
        ttl: timedelta | None = None,
    ) -> OfferResult:
        """Take the ride back from its driver and offer it again."""
        if not reason or not reason.strip():
            raise ValidationError("redispatch requires a reason", details={"ride_id": ride_id})

        with log_ride_context(ride_id):
            ride = self._engine.transition(
                ride_id,
                RideAction.REDISPATCH,
                actor,
                TransitionDetails(reason=reason.strip()),
            )
            entry = ride.action_history[-1]
            if isinstance(entry, RedispatchedEntry) and entry.previous_driver_id:
                self._directory.clear_assignment(entry.previous_driver_id, ride_id)
            return self.offer(ride_id, candidate_driver_ids, ttl, actor=actor)

    def expire_stale_locks(self) -> int:
        """Revert every ride whose lock has expired. Returns how many were reverted."""
        now = self._clock.now()
        reverted = 0

        for lock in self._locks.pop_expired(now):
            if self._revert_expired(lock.ride_id, lock.driver_id, lock.expires_at):
                reverted += 1

        # Rides left locked without a table entry, e.g. after a restart.
        for ride in self._engine.list_by_status(RideStatus.LOCKED):
            last_lock = ride.last_lock_entry()
            if last_lock is None or last_lock.expires_at > now:
                continue
            if self._locks.get(ride.ride_id) is not None:
                continue
            if self._revert_expired(ride.ride_id, last_lock.driver_id, last_lock.expires_at):
                reverted += 1

        if reverted:
            logger.info("Expired %d stale dispatch locks", reverted)
        self._forget_closed_offers()
        return reverted

    def offer_ttl(self, ride_id: str) -> timedelta | None:
        """Lock ttl remembered from the ride's last offer, if any."""
        with self._offer_ttls_lock:
            return self._offer_ttls.get(ride_id)

    def restore_assignments(self) -> int:
        """Record every stored active assignment in the directory.

        The directory's assignment view lives in memory; a host calls this
        once at startup so drivers busy before a restart stay busy.
        """
        restored = 0
        for status in RideStatus:
            if status not in ACTIVE_ASSIGNMENT_STATUSES:
                continue
            for ride in self._engine.list_by_status(status):
                if ride.driver_id:
                    self._directory.record_assignment(ride.driver_id, ride.ride_id)
                    restored += 1
        if restored:
            logger.info("Restored %d driver assignments", restored)
        return restored

    def _forget_closed_offers(self) -> None:
        with self._offer_ttls_lock:
            remembered = list(self._offer_ttls.items())
        for ride_id, ttl in remembered:
            ride = self._find(ride_id)
            if ride is not None and ride.status in OPEN_OFFER_STATUSES:
                continue
            with self._offer_ttls_lock:
                # A re-offer in the meantime stores a new ttl; keep that one.
                if self._offer_ttls.get(ride_id) is ttl:
                    del self._offer_ttls[ride_id]

    def _take_lock(
        self, ride_id: str, driver_id: str, ttl: timedelta
    ) -> tuple[DispatchLock, bool]:
        try:
            return self._locks.acquire(ride_id, driver_id, ttl, self._clock.now())
        except AlreadyLocked as e:
            expired = self._locks.expired_for(ride_id, driver_id)
            if expired is not None and e.details.get("ride_id") == ride_id:
                raise LockExpired(
                    f"Lock of driver {driver_id} on ride {ride_id} expired before confirmation",
                    details={"ride_id": ride_id, "expired_at": expired.expires_at.isoformat()},
                ) from e
            raise

    def _lock_steps(self, current: Ride, lock: DispatchLock, driver: DriverInfo) -> list[Step]:
        if _taken_by_other(current, driver.driver_id):
            self._raise_taken(current, driver.driver_id)

        steps = []
        if current.status == RideStatus.LOCKED:
            if self._holds_recorded_lock(current, lock):
                return steps
            # The recorded lock is no longer in the table, so it has expired.
            steps.append(self._expiry_step())

        details = TransitionDetails(driver=driver, expires_at=lock.expires_at)
        steps.append(Step(RideAction.LOCK, driver_actor(driver.driver_id), details))
        return steps

    def _confirm_steps(self, current: Ride, lock: DispatchLock, driver: DriverInfo) -> list[Step]:
        if current.status in DRIVER_BOUND_STATUSES and current.driver_id == driver.driver_id:
            return []
        steps = self._lock_steps(current, lock, driver)
        details = TransitionDetails(driver=driver)
        steps.append(Step(RideAction.ASSIGN, driver_actor(driver.driver_id), details))
        return steps

    def _holds_recorded_lock(self, ride: Ride, lock: DispatchLock) -> bool:
        last_lock = ride.last_lock_entry()
        return (
            ride.status == RideStatus.LOCKED
            and last_lock is not None
            and last_lock.driver_id == lock.driver_id
            and last_lock.expires_at == lock.expires_at
        )

    def _expiry_step(self) -> Step:
        return Step(RideAction.RELEASE, LOCK_EXPIRY_ACTOR, TransitionDetails(reason="lock_expired"))

    def _settle_expired(self, ride_id: str) -> None:
        lock = self._locks.take_expired(ride_id, self._clock.now())
        if lock is not None:
            self._revert_expired(lock.ride_id, lock.driver_id, lock.expires_at)

    def _revert_expired(self, ride_id: str, driver_id: str, expires_at: datetime) -> bool:
        applied = False

        def plan(current: Ride) -> list[Step]:
            nonlocal applied
            last_lock = current.last_lock_entry()
            applied = (
                current.status == RideStatus.LOCKED
                and last_lock is not None
                and last_lock.driver_id == driver_id
                and last_lock.expires_at == expires_at
            )
            return [self._expiry_step()] if applied else []

        with log_ride_context(ride_id, driver_id=driver_id):
            try:
                self._engine.apply(ride_id, plan, "expire_lock")
            except NotFoundError:
                logger.warning("Expired lock refers to missing ride %s", ride_id)
                return False
            if applied:
                logger.info("Lock of driver %s on ride %s expired; ride back to sent", driver_id, ride_id)
        return applied

    def _check_driver_free(self, driver_id: str, ride_id: str) -> None:
        """Raise AlreadyLocked if the driver is busy with another ride.

        Runs under the driver's mutex, so stale holds can be pruned safely.
        """
        held_ride_id = self._busy_ride(driver_id, ride_id, prune=True)
        if held_ride_id is not None:
            raise AlreadyLocked(
                f"Driver {driver_id} is already busy with ride {held_ride_id}",
                details={"driver_id": driver_id, "held_ride_id": held_ride_id},
            )

    def _busy_ride(self, driver_id: str, ride_id: str, prune: bool) -> str | None:
        """Other ride the driver is still locked on or assigned to.

        The directory's view is checked against the stored ride. A hold on a
        ride that has moved on (cancelled, finished, released, redispatched)
        does not count; with ``prune`` it is also dropped from the lock table
        and the directory.
        """
        pruned: set[str] = set()
        while True:
            held_ride_id = self._directory.current_ride(driver_id)
            if held_ride_id is None or held_ride_id == ride_id or held_ride_id in pruned:
                return None
            if self._still_holds(held_ride_id, driver_id):
                return held_ride_id
            if not prune:
                return None
            self._locks.release(held_ride_id, driver_id)
            self._directory.clear_assignment(driver_id, held_ride_id)
            pruned.add(held_ride_id)
            logger.info("Dropped stale hold of driver %s on ride %s", driver_id, held_ride_id)

    def _still_holds(self, ride_id: str, driver_id: str) -> bool:
        ride = self._find(ride_id)
        if ride is None:
            return False
        if ride.status in ACTIVE_ASSIGNMENT_STATUSES:
            return ride.driver_id == driver_id
        if ride.status == RideStatus.LOCKED:
            last_lock = ride.last_lock_entry()
            return (
                last_lock is not None
                and last_lock.driver_id == driver_id
                and last_lock.expires_at > self._clock.now()
            )
        return False

    def _find(self, ride_id: str) -> Ride | None:
        try:
            return self._engine.get(ride_id)
        except NotFoundError:
            return None

    def _raise_taken(self, ride: Ride, driver_id: str) -> None:
        if self._locks.expired_for(ride.ride_id, driver_id) is not None:
            raise LockExpired(
                f"Lock of driver {driver_id} on ride {ride.ride_id} expired before confirmation",
                details={"ride_id": ride.ride_id, "status": ride.status.value},
            )
        raise AlreadyLocked(
            f"Ride {ride.ride_id} is already taken by another driver",
            details={"ride_id": ride.ride_id, "status": ride.status.value},
        )

    def _require_driver(self, driver_id: str) -> DriverInfo:
        driver = self._directory.get_driver(driver_id)
        if driver is None:
            raise NotFoundError(f"Driver {driver_id} not found", details={"driver_id": driver_id})
        return driver

    def _ttl_for(self, ride_id: str, ttl: timedelta | None) -> timedelta:
        if ttl is None:
            with self._offer_ttls_lock:
                ttl = self._offer_ttls.get(ride_id, self._default_ttl)
        self._check_ttl(ttl)
        return ttl

    def _check_ttl(self, ttl: timedelta) -> None:
        if ttl <= timedelta(0):
            raise ValidationError("Lock TTL must be positive", details={"ttl": ttl.total_seconds()})

    def _notify(self, ride: Ride, driver_ids: list[str]) -> dict[str, DeliveryOutcome]:
        if not driver_ids:
            logger.warning("No eligible drivers for ride %s", ride.ride_id)
            return {}
        try:
            outcomes = self._broadcast.offer(ride.summary(), driver_ids)
        except Exception:
            logger.exception("Broadcast of ride %s failed", ride.ride_id)
            return {driver_id: DeliveryOutcome.FAILED for driver_id in driver_ids}
        return {
            driver_id: outcomes.get(driver_id, DeliveryOutcome.FAILED) for driver_id in driver_ids
        }
