"""
Ride Dispatch - entry point

Runs the dispatch API with the lock expiry sweeper and the recurrence runner
as background threads in the same process.
"""

import logging
import sys

import uvicorn
from pydantic import ValidationError as SettingsValidationError

from ride_dispatch.api.app import create_app
from ride_dispatch.context import build_context
from ride_dispatch.ride_logging import setup_logging
from ride_dispatch.settings import get_settings

logger = logging.getLogger(__name__)


def main() -> None:
    try:
        settings = get_settings()
    except SettingsValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(
        level=settings.logging.level,
        json_output=settings.logging.format == "json",
        environment=settings.logging.environment,
    )

    context = build_context(settings)
    app = create_app(context, run_background=True)

    logger.info("Starting ride dispatch service on %s:%d", settings.api.host, settings.api.port)
    uvicorn.run(
        app,
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
