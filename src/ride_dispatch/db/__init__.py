"""Database persistence module."""

import logging
from typing import TYPE_CHECKING

from .database import init_database
from .repositories import InMemoryRideRepository, SqlRideRepository
from .schema import DispatchMetadata, RideRecord, SequenceCounter
from .transaction import transaction

if TYPE_CHECKING:
    from ride_dispatch.ports import RideRepository
    from ride_dispatch.settings import DatabaseSettings

logger = logging.getLogger(__name__)

__all__ = [
    "init_database",
    "RideRecord",
    "SequenceCounter",
    "DispatchMetadata",
    "transaction",
    "InMemoryRideRepository",
    "SqlRideRepository",
    "get_ride_repository",
]


def get_ride_repository(settings: "DatabaseSettings") -> "RideRepository":
    """Build the ride repository for the configured backend.

    Raises:
        ValueError: If the backend is unknown
    """
    if settings.backend == "sqlite":
        logger.info("Using SQLite ride repository at %s", settings.path)
        return SqlRideRepository(init_database(settings.path))

    if settings.backend == "memory":
        logger.info("Using in-memory ride repository")
        return InMemoryRideRepository()

    raise ValueError(f"Unknown database backend: {settings.backend}. Expected 'sqlite' or 'memory'")
