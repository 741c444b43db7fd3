from fastapi import APIRouter

from ride_dispatch.api.dependencies import SchedulerDep
from ride_dispatch.api.models.recurrence import MaterializeRequest, RunDueRequest, RunDueResponse
from ride_dispatch.ride import Ride

router = APIRouter()


@router.get("/due", response_model=list[Ride])
def list_due(scheduler: SchedulerDep) -> list[Ride]:
    return scheduler.due_templates()


@router.post("/run", response_model=RunDueResponse)
def run_due(body: RunDueRequest, scheduler: SchedulerDep) -> RunDueResponse:
    """Materialize every due template once."""
    return RunDueResponse(created=scheduler.run_due(body.as_of))


@router.post("/templates/{template_id}/materialize", response_model=Ride)
def materialize(template_id: str, body: MaterializeRequest, scheduler: SchedulerDep) -> Ride:
    return scheduler.materialize(template_id, body.as_of, body.scheduled_for)
