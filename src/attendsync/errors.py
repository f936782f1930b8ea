"""
Domain exceptions for the attendance and time-sync services.

Services raise these; the API layer maps each ``code`` onto an HTTP status.
Degraded-but-successful paths (unknown sync session on clock-in, skipped
location verification) are not exceptions at all; they are logged and
reflected in the returned data.
"""
from typing import Any, Dict, Optional


class AttendanceError(RuntimeError):
    """Base class. ``code`` is stable and safe to show to API clients."""

    code = "ATTENDANCE_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context


class AlreadyClockedIn(AttendanceError):
    """The user already has an open TimeRecord. Retries should treat this as success."""

    code = "ALREADY_CLOCKED_IN"

    def __init__(self, user_id: str, record_id: Optional[int] = None):
        super().__init__(
            f"User {user_id} is already clocked in", user_id=user_id, record_id=record_id
        )
        self.user_id = user_id
        self.record_id = record_id


class NotClockedIn(AttendanceError):
    code = "NOT_CLOCKED_IN"


class InvalidDuration(AttendanceError):
    """Clock-out would precede clock-in."""

    code = "INVALID_DURATION"


class InvalidTimestamp(AttendanceError):
    code = "INVALID_TIMESTAMP"


class InvalidCoordinates(AttendanceError):
    code = "INVALID_COORDINATES"


class SessionNotFound(AttendanceError):
    code = "SESSION_NOT_FOUND"


class SessionExpired(AttendanceError):
    code = "SESSION_EXPIRED"


class LocationOverrideRequired(AttendanceError):
    """Strict mode only: clock-out location failed and no override was confirmed."""

    code = "LOCATION_OVERRIDE_REQUIRED"

    def __init__(self, message: str, verification):
        super().__init__(message)
        self.verification = verification


class PersistenceFailure(AttendanceError):
    code = "PERSISTENCE_FAILURE"
