"""Offer locks and the coordinator that arbitrates them."""

from .coordinator import (
    DISPATCH_ACTOR,
    LOCK_EXPIRY_ACTOR,
    DispatchCoordinator,
    OfferResult,
    driver_actor,
)
from .locks import DispatchLock, LockTable
from .sweeper import LockExpirySweeper

__all__ = [
    "DispatchCoordinator",
    "OfferResult",
    "DispatchLock",
    "LockTable",
    "LockExpirySweeper",
    "LOCK_EXPIRY_ACTOR",
    "DISPATCH_ACTOR",
    "driver_actor",
]
