"""FastAPI dependency injection providers."""

from typing import Annotated

from fastapi import Depends, Request

from ride_dispatch.context import DispatchContext
from ride_dispatch.directory import InMemoryDriverDirectory
from ride_dispatch.dispatch import DispatchCoordinator
from ride_dispatch.lifecycle import RideLifecycleEngine
from ride_dispatch.recurrence.scheduler import RecurrenceScheduler


def get_context(request: Request) -> DispatchContext:
    """Retrieve the DispatchContext from app state."""
    context: DispatchContext = request.app.state.context
    return context


def get_engine(request: Request) -> RideLifecycleEngine:
    return get_context(request).engine


def get_coordinator(request: Request) -> DispatchCoordinator:
    return get_context(request).coordinator


def get_scheduler(request: Request) -> RecurrenceScheduler:
    return get_context(request).scheduler


def get_directory(request: Request) -> InMemoryDriverDirectory:
    return get_context(request).directory


EngineDep = Annotated[RideLifecycleEngine, Depends(get_engine)]
CoordinatorDep = Annotated[DispatchCoordinator, Depends(get_coordinator)]
SchedulerDep = Annotated[RecurrenceScheduler, Depends(get_scheduler)]
DirectoryDep = Annotated[InMemoryDriverDirectory, Depends(get_directory)]
