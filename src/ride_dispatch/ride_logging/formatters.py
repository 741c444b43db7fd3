"""Output formats for dispatch logs."""

import json
import logging
from datetime import UTC, datetime
from typing import Any

# Record attributes promoted to top-level keys in JSON output.
RIDE_FIELDS = ("ride_id", "driver_id", "template_id", "correlation_id")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def __init__(self, environment: str = "development"):
        super().__init__()
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "env": self.environment,
        }
        entry.update(
            {name: record.__dict__[name] for name in RIDE_FIELDS if name in record.__dict__}
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class DevFormatter(logging.Formatter):
    """Single-line console format; needs ``correlation_id`` on every record."""

    FORMAT = "%(asctime)s [%(levelname)8s] [corr=%(correlation_id)s] %(name)s: %(message)s"

    def __init__(self) -> None:
        super().__init__(fmt=self.FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
