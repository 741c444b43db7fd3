"""FastAPI application factory for the ride dispatch API."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ride_dispatch.api.routes import drivers, recurrence, rides
from ride_dispatch.context import DispatchContext
from ride_dispatch.core.exceptions import (
    ConfigurationError,
    LockExpired,
    NotFoundError,
    RideDispatchError,
    StateError,
    TransientError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def status_code_for(error: RideDispatchError) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, StateError | LockExpired):
        return 409
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, TransientError | ConfigurationError):
        return 503
    return 500


async def ride_dispatch_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RideDispatchError)
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={
            "error": type(exc).__name__,
            "message": exc.message,
            "details": exc.details,
        },
    )


def create_app(context: DispatchContext, run_background: bool = False) -> FastAPI:
    """Create FastAPI application with injected dependencies.

    Args:
        context: Wired dispatch components
        run_background: Start the lock sweeper and recurrence runner with the app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Manage application startup and shutdown."""
        if run_background:
            context.start_background()
        yield
        if run_background:
            context.stop_background()

    app = FastAPI(
        title="Ride Dispatch API",
        version="0.1.0",
        description="Ride lifecycle, driver offers and recurring rides",
        lifespan=lifespan,
    )

    # Set dependencies immediately (not in lifespan) so they're available for testing
    app.state.context = context

    app.add_exception_handler(RideDispatchError, ride_dispatch_error_handler)

    app.include_router(rides.router, prefix="/rides", tags=["rides"])
    app.include_router(drivers.router, prefix="/drivers", tags=["drivers"])
    app.include_router(recurrence.router, prefix="/recurrence", tags=["recurrence"])

    @app.get("/health")
    async def health_check() -> dict[str, str | int]:
        """Health check endpoint for monitoring."""
        return {
            "status": "healthy",
            "active_locks": len(context.lock_table),
            "drivers": len(context.directory),
        }

    return app
