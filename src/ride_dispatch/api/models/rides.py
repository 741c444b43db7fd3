from datetime import datetime, timedelta
from typing import Literal

from pydantic import BaseModel, Field

from ride_dispatch.dispatch import DispatchLock, OfferResult
from ride_dispatch.history import Location
from ride_dispatch.issues import IssueReport
from ride_dispatch.lifecycle import TripUpdate
from ride_dispatch.ports import DeliveryOutcome
from ride_dispatch.ride import Ride

DirectAction = Literal["approve", "enroute", "arrive", "finish", "cancel"]


class TransitionRequest(BaseModel):
    actor: str = Field(min_length=1)
    reason: str | None = None
    note: str | None = None
    location: Location | None = None


class OfferRequest(BaseModel):
    candidate_driver_ids: list[str] | None = None
    ttl_seconds: float | None = Field(default=None, gt=0)
    actor: str = "system:dispatch"

    def ttl(self) -> timedelta | None:
        return None if self.ttl_seconds is None else timedelta(seconds=self.ttl_seconds)


class DriverActionRequest(BaseModel):
    driver_id: str = Field(min_length=1)
    ttl_seconds: float | None = Field(default=None, gt=0)

    def ttl(self) -> timedelta | None:
        return None if self.ttl_seconds is None else timedelta(seconds=self.ttl_seconds)


class RedispatchRequest(OfferRequest):
    actor: str = Field(min_length=1)
    reason: str = Field(min_length=1)


class TripUpdateRequest(TripUpdate):
    actor: str = Field(min_length=1)


class ReportIssueRequest(IssueReport):
    reported_by: str = Field(min_length=1)


class ResolveIssueRequest(BaseModel):
    resolution: str = Field(min_length=1)
    resolved_by: str = Field(min_length=1)


class LockResponse(BaseModel):
    ride_id: str
    driver_id: str
    acquired_at: datetime
    expires_at: datetime

    @classmethod
    def from_lock(cls, lock: DispatchLock) -> "LockResponse":
        return cls(
            ride_id=lock.ride_id,
            driver_id=lock.driver_id,
            acquired_at=lock.acquired_at,
            expires_at=lock.expires_at,
        )


class OfferResponse(BaseModel):
    ride: Ride
    deliveries: dict[str, DeliveryOutcome]

    @classmethod
    def from_result(cls, result: OfferResult) -> "OfferResponse":
        return cls(ride=result.ride, deliveries=result.deliveries)


class ReleaseResponse(BaseModel):
    released: bool
    ride: Ride | None = None


class RateRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    rated_by: str = Field(min_length=1)
    comment: str | None = None
