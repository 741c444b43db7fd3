"""Wiring of the dispatch components from settings."""

import logging
from dataclasses import dataclass

from ride_dispatch.broadcast import LoggingBroadcastChannel
from ride_dispatch.core.clock import Clock, SystemClock
from ride_dispatch.db import get_ride_repository
from ride_dispatch.directory import InMemoryDriverDirectory
from ride_dispatch.dispatch import DispatchCoordinator, LockExpirySweeper, LockTable
from ride_dispatch.lifecycle import RideLifecycleEngine
from ride_dispatch.ports import BroadcastChannel, RideRepository, SettingsProvider
from ride_dispatch.providers import EnvSettingsProvider
from ride_dispatch.recurrence.runner import RecurrenceRunner
from ride_dispatch.recurrence.scheduler import RecurrenceScheduler
from ride_dispatch.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class DispatchContext:
    """Everything a host needs to serve rides, owned by the host."""

    settings: Settings
    clock: Clock
    repository: RideRepository
    settings_provider: SettingsProvider
    lock_table: LockTable
    directory: InMemoryDriverDirectory
    broadcast: BroadcastChannel
    engine: RideLifecycleEngine
    coordinator: DispatchCoordinator
    scheduler: RecurrenceScheduler
    sweeper: LockExpirySweeper
    runner: RecurrenceRunner

    def start_background(self) -> None:
        self.sweeper.start()
        self.runner.start()

    def stop_background(self) -> None:
        self.runner.stop()
        self.sweeper.stop()


def build_context(
    settings: Settings | None = None,
    *,
    clock: Clock | None = None,
    repository: RideRepository | None = None,
    settings_provider: SettingsProvider | None = None,
    broadcast: BroadcastChannel | None = None,
) -> DispatchContext:
    """Build the components; any collaborator can be supplied by the caller."""
    settings = settings or get_settings()
    clock = clock or SystemClock()
    repository = repository or get_ride_repository(settings.database)
    settings_provider = settings_provider or EnvSettingsProvider()
    broadcast = broadcast or LoggingBroadcastChannel()

    lock_table = LockTable()
    directory = InMemoryDriverDirectory(lock_table, clock)
    engine = RideLifecycleEngine(
        repository,
        settings_provider,
        clock=clock,
        dispatch_settings=settings.dispatch,
    )
    coordinator = DispatchCoordinator(
        engine,
        lock_table,
        directory,
        broadcast,
        clock=clock,
        dispatch_settings=settings.dispatch,
    )
    coordinator.restore_assignments()
    scheduler = RecurrenceScheduler(engine, settings_provider, clock=clock)

    logger.info(
        "Dispatch context ready (backend=%s lock_ttl=%ss)",
        settings.database.backend,
        settings.dispatch.lock_ttl_seconds,
    )
    return DispatchContext(
        settings=settings,
        clock=clock,
        repository=repository,
        settings_provider=settings_provider,
        lock_table=lock_table,
        directory=directory,
        broadcast=broadcast,
        engine=engine,
        coordinator=coordinator,
        scheduler=scheduler,
        sweeper=LockExpirySweeper(coordinator, settings.dispatch.sweep_interval_seconds),
        runner=RecurrenceRunner(
            scheduler,
            settings.recurrence.poll_interval_seconds,
            coordinator=coordinator,
            auto_dispatch=settings.recurrence.auto_dispatch,
        ),
    )
