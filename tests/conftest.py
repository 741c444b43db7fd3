from datetime import timedelta

import pytest

from ride_dispatch.broadcast import LoggingBroadcastChannel
from ride_dispatch.db.database import init_database
from ride_dispatch.db.repositories import InMemoryRideRepository, SqlRideRepository
from ride_dispatch.directory import InMemoryDriverDirectory
from ride_dispatch.dispatch import DispatchCoordinator, LockTable
from ride_dispatch.lifecycle import RideLifecycleEngine
from ride_dispatch.pricing import PricingRates
from ride_dispatch.providers import StaticSettingsProvider
from ride_dispatch.recurrence.scheduler import RecurrenceScheduler
from ride_dispatch.ride_logging import LogContext
from ride_dispatch.settings import DispatchSettings
from tests.factories import T0, FakeClock


@pytest.fixture(autouse=True)
def clear_log_context():
    """Reset thread-local log context between tests."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def clock() -> FakeClock:
    """Frozen clock starting at T0; advance explicitly."""
    return FakeClock(T0)


@pytest.fixture
def rates() -> PricingRates:
    return PricingRates(
        base_price=15.0,
        price_per_km=3.0,
        price_per_minute=0.5,
        night_surcharge_percent=25.0,
        weekend_days=[4, 5],
        weekend_surcharge_percent=10.0,
        commission_rate=0.10,
        timezone="UTC",
    )


@pytest.fixture
def settings_provider(rates: PricingRates) -> StaticSettingsProvider:
    return StaticSettingsProvider(rates)


@pytest.fixture
def dispatch_settings() -> DispatchSettings:
    return DispatchSettings(
        lock_ttl_seconds=60,
        version_retry_attempts=20,
        version_retry_base_delay=0.0,
    )


@pytest.fixture
def temp_sqlite_db(tmp_path):
    """Temporary SQLite database for persistence tests."""
    return tmp_path / "test_rides.db"


@pytest.fixture
def repository() -> InMemoryRideRepository:
    return InMemoryRideRepository()


@pytest.fixture
def sql_repository(temp_sqlite_db) -> SqlRideRepository:
    return SqlRideRepository(init_database(str(temp_sqlite_db)))


@pytest.fixture
def engine(repository, settings_provider, clock, dispatch_settings) -> RideLifecycleEngine:
    return RideLifecycleEngine(
        repository,
        settings_provider,
        clock=clock,
        dispatch_settings=dispatch_settings,
    )


@pytest.fixture
def lock_table() -> LockTable:
    return LockTable()


@pytest.fixture
def directory(lock_table, clock) -> InMemoryDriverDirectory:
    """Directory with three active drivers in the north region and one in the south."""
    directory = InMemoryDriverDirectory(lock_table, clock)
    directory.register_driver("d1", "Avi Cohen", "052-1111111", region="north")
    directory.register_driver("d2", "Noa Levi", "053-2222222", region="north")
    directory.register_driver("d3", "Yossi Mizrahi", "054-3333333", region="north")
    directory.register_driver("d4", "Rina Katz", "055-4444444", region="south")
    return directory


@pytest.fixture
def broadcast() -> LoggingBroadcastChannel:
    return LoggingBroadcastChannel()


@pytest.fixture
def coordinator(
    engine, lock_table, directory, broadcast, clock, dispatch_settings
) -> DispatchCoordinator:
    return DispatchCoordinator(
        engine,
        lock_table,
        directory,
        broadcast,
        clock=clock,
        dispatch_settings=dispatch_settings,
    )


@pytest.fixture
def scheduler(engine, settings_provider, clock) -> RecurrenceScheduler:
    return RecurrenceScheduler(engine, settings_provider, clock=clock)


@pytest.fixture
def lock_ttl() -> timedelta:
    return timedelta(seconds=60)
