from pydantic import AwareDatetime, BaseModel

from ride_dispatch.ride import Ride


class RunDueRequest(BaseModel):
    as_of: AwareDatetime | None = None


class MaterializeRequest(BaseModel):
    as_of: AwareDatetime | None = None
    scheduled_for: AwareDatetime | None = None


class RunDueResponse(BaseModel):
    created: list[Ride]
