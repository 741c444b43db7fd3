"""Error types raised by the dispatch engine, grouped by whether a retry can help."""

from typing import Any


class RideDispatchError(Exception):
    """Root of every error this package raises on purpose.

    ``details`` carries structured context (ride id, action, status) that the
    API layer copies into error responses.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransientError(RideDispatchError):
    """Retrying the same request later may work."""


class VersionConflict(TransientError):
    """Someone else saved the ride between our read and our write."""


class PermanentError(RideDispatchError):
    """The request itself is wrong; repeating it gives the same answer."""


class ValidationError(PermanentError):
    """Malformed trip facts, driver info or recurrence rule."""


class NotFoundError(PermanentError):
    """No ride or template with that id."""


class StateError(PermanentError):
    """The ride's current state does not allow the request."""


class InvalidTransition(StateError):
    def __init__(self, ride_id: str, action: str, status: str):
        super().__init__(
            f"Cannot apply '{action}' to ride {ride_id} in status '{status}'",
            details={"ride_id": ride_id, "action": action, "status": status},
        )
        self.ride_id = ride_id
        self.action = action
        self.status = status


class AlreadyLocked(StateError):
    """Another driver holds the ride's dispatch lock, or this driver holds a different ride."""


class RecurrenceExhausted(StateError):
    """Template is past its end date or occurrence count."""


class ConfigurationError(PermanentError):
    """Settings failed validation (bad timezone, negative rate, unknown backend)."""


class LockExpired(RideDispatchError):
    """The driver's lock lapsed and the ride has since gone to someone else.

    A lapsed lock on a ride nobody else took is not an error: the driver can
    simply acquire again.
    """
