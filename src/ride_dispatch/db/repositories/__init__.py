"""Repository layer for ride persistence."""

from .memory import InMemoryRideRepository
from .ride_repository import SqlRideRepository

__all__ = [
    "InMemoryRideRepository",
    "SqlRideRepository",
]
