from pydantic import BaseModel, Field


class RegisterDriverRequest(BaseModel):
    driver_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    region: str | None = None
    active: bool = True


class DriverResponse(BaseModel):
    driver_id: str
    name: str
    phone: str
    region: str | None = None
    active: bool


class AvailabilityRequest(BaseModel):
    active: bool
