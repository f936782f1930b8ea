"""Translate domain exceptions into HTTP errors with a ``{code, message}`` detail."""
from fastapi import HTTPException

from attendsync.api.schemas import VerificationOut
from attendsync.errors import (
    AlreadyClockedIn,
    AttendanceError,
    InvalidCoordinates,
    InvalidDuration,
    InvalidTimestamp,
    LocationOverrideRequired,
    NotClockedIn,
    PersistenceFailure,
    SessionExpired,
    SessionNotFound,
)

_STATUS_BY_TYPE = [
    (AlreadyClockedIn, 409),
    (LocationOverrideRequired, 409),
    (NotClockedIn, 404),
    (SessionNotFound, 404),
    (SessionExpired, 410),
    (InvalidDuration, 422),
    (InvalidTimestamp, 400),
    (InvalidCoordinates, 400),
    (PersistenceFailure, 503),
]


def to_http_exception(exc: AttendanceError) -> HTTPException:
    status_code = next((code for kind, code in _STATUS_BY_TYPE if isinstance(exc, kind)), 400)
    detail = {"code": exc.code, "message": exc.message}
    if isinstance(exc, AlreadyClockedIn):
        detail["recordId"] = exc.record_id
    if isinstance(exc, LocationOverrideRequired):
        detail["verification"] = VerificationOut.from_result(exc.verification).model_dump(
            by_alias=True
        )
    return HTTPException(status_code=status_code, detail=detail)
