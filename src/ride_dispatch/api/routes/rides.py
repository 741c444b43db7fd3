from typing import Annotated

from fastapi import APIRouter, Query, status

from ride_dispatch.api.dependencies import CoordinatorDep, EngineDep
from ride_dispatch.api.models.rides import (
    DirectAction,
    DriverActionRequest,
    LockResponse,
    OfferRequest,
    OfferResponse,
    RateRequest,
    RedispatchRequest,
    ReleaseResponse,
    ReportIssueRequest,
    ResolveIssueRequest,
    TransitionRequest,
    TripUpdateRequest,
)
from ride_dispatch.issues import IssueReport
from ride_dispatch.lifecycle import RideRequest, TransitionDetails, TripUpdate
from ride_dispatch.ride import Ride, RideAction, RideStatus

router = APIRouter()


@router.post("", response_model=Ride, status_code=status.HTTP_201_CREATED)
def create_ride(body: RideRequest, engine: EngineDep, actor: str = "api") -> Ride:
    """Create a ride (or a recurring template when ``recurrence`` is set)."""
    return engine.create(body, actor)


@router.get("", response_model=list[Ride])
def list_rides(
    engine: EngineDep,
    ride_status: Annotated[RideStatus, Query(alias="status")] = RideStatus.SENT,
) -> list[Ride]:
    return engine.list_by_status(ride_status)


@router.get("/{ride_id}", response_model=Ride)
def get_ride(ride_id: str, engine: EngineDep) -> Ride:
    return engine.get(ride_id)


@router.post("/{ride_id}/actions/{action}", response_model=Ride)
def apply_action(
    ride_id: str, action: DirectAction, body: TransitionRequest, engine: EngineDep
) -> Ride:
    """Apply approve, enroute, arrive, finish or cancel."""
    details = TransitionDetails(reason=body.reason, note=body.note, location=body.location)
    return engine.transition(ride_id, RideAction(action), body.actor, details)


@router.patch("/{ride_id}/trip", response_model=Ride)
def update_trip(ride_id: str, body: TripUpdateRequest, engine: EngineDep) -> Ride:
    changes = TripUpdate.model_validate(body.model_dump(exclude={"actor"}, exclude_unset=True))
    return engine.update_trip(ride_id, changes, body.actor)


@router.post("/{ride_id}/offer", response_model=OfferResponse)
def offer_ride(ride_id: str, body: OfferRequest, coordinator: CoordinatorDep) -> OfferResponse:
    result = coordinator.offer(ride_id, body.candidate_driver_ids, body.ttl(), actor=body.actor)
    return OfferResponse.from_result(result)


@router.post("/{ride_id}/acquire", response_model=LockResponse)
def acquire_ride(
    ride_id: str, body: DriverActionRequest, coordinator: CoordinatorDep
) -> LockResponse:
    return LockResponse.from_lock(coordinator.acquire(ride_id, body.driver_id, body.ttl()))


@router.post("/{ride_id}/confirm", response_model=Ride)
def confirm_ride(ride_id: str, body: DriverActionRequest, coordinator: CoordinatorDep) -> Ride:
    return coordinator.confirm(ride_id, body.driver_id)


@router.post("/{ride_id}/release", response_model=ReleaseResponse)
def release_ride(
    ride_id: str, body: DriverActionRequest, coordinator: CoordinatorDep
) -> ReleaseResponse:
    ride = coordinator.release(ride_id, body.driver_id)
    return ReleaseResponse(released=ride is not None, ride=ride)


@router.post("/{ride_id}/redispatch", response_model=OfferResponse)
def redispatch_ride(
    ride_id: str, body: RedispatchRequest, coordinator: CoordinatorDep
) -> OfferResponse:
    result = coordinator.redispatch(
        ride_id, body.actor, body.reason, body.candidate_driver_ids, body.ttl()
    )
    return OfferResponse.from_result(result)


@router.post("/{ride_id}/issues", response_model=Ride, status_code=status.HTTP_201_CREATED)
def report_issue(ride_id: str, body: ReportIssueRequest, engine: EngineDep) -> Ride:
    report = IssueReport(type=body.type, description=body.description, severity=body.severity)
    return engine.record_issue(ride_id, report, body.reported_by)


@router.post("/{ride_id}/issues/{issue_id}/resolve", response_model=Ride)
def resolve_issue(
    ride_id: str, issue_id: str, body: ResolveIssueRequest, engine: EngineDep
) -> Ride:
    return engine.resolve_issue(ride_id, issue_id, body.resolution, body.resolved_by)


@router.post("/{ride_id}/rating", response_model=Ride)
def rate_ride(ride_id: str, body: RateRequest, engine: EngineDep) -> Ride:
    return engine.rate(ride_id, body.rating, body.rated_by, body.comment)
