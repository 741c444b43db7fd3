from fastapi import APIRouter, HTTPException, status

from ride_dispatch.api.dependencies import DirectoryDep
from ride_dispatch.api.models.drivers import (
    AvailabilityRequest,
    DriverResponse,
    RegisterDriverRequest,
)
from ride_dispatch.directory import DriverRecord

router = APIRouter()


def _to_response(record: DriverRecord) -> DriverResponse:
    return DriverResponse(
        driver_id=record.driver_id,
        name=record.name,
        phone=record.phone,
        region=record.region,
        active=record.active,
    )


@router.post("", response_model=DriverResponse, status_code=status.HTTP_201_CREATED)
def register_driver(body: RegisterDriverRequest, directory: DirectoryDep) -> DriverResponse:
    record = directory.register_driver(
        body.driver_id, body.name, body.phone, region=body.region, active=body.active
    )
    return _to_response(record)


@router.get("", response_model=list[DriverResponse])
def list_drivers(directory: DirectoryDep) -> list[DriverResponse]:
    return [_to_response(record) for record in directory.all_drivers()]


@router.put("/{driver_id}/availability", response_model=DriverResponse)
def set_availability(
    driver_id: str, body: AvailabilityRequest, directory: DirectoryDep
) -> DriverResponse:
    if directory.get_record(driver_id) is None:
        raise HTTPException(status_code=404, detail=f"Driver {driver_id} not found")
    directory.set_active(driver_id, body.active)
    record = directory.get_record(driver_id)
    assert record is not None
    return _to_response(record)
