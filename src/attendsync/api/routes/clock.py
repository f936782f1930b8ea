"""Clock-in / clock-out routes."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import Field

from attendsync.api.deps import CurrentUser, get_attendance_service, get_current_user, require_student
from attendsync.api.errors import to_http_exception
from attendsync.api.schemas import CamelModel, LocationIn, SyncDataOut, TimestampValue, VerificationOut
from attendsync.attendance.service import AttendanceService
from attendsync.errors import AttendanceError

router = APIRouter()


class ClockInRequest(CamelModel):
    rotation_id: str = Field(min_length=1)
    timestamp: TimestampValue = None
    location: Optional[LocationIn] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    # Sync-specific fields
    client_id: Optional[str] = None
    client_time: TimestampValue = None
    synced_timestamp: TimestampValue = None
    drift_ms: Optional[int] = None


class ClockInResponse(CamelModel):
    is_clocked: bool
    record_id: int
    clock_in_time: datetime
    verification_status: str
    verification: Optional[VerificationOut] = None
    sync_data: Optional[SyncDataOut] = None


class ClockOutRequest(CamelModel):
    time_record_id: Optional[int] = None  # defaults to the caller's open record
    timestamp: TimestampValue = None
    location: Optional[LocationIn] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    client_id: Optional[str] = None
    client_time: TimestampValue = None
    synced_timestamp: TimestampValue = None
    drift_ms: Optional[int] = None
    confirm_override: bool = False


class ClockOutResponse(CamelModel):
    record_id: int
    total_hours: str
    duration_seconds: float
    clock_in_time: datetime
    clock_out_time: datetime
    verification_status: str
    verification: Optional[VerificationOut] = None
    sync_data: Optional[SyncDataOut] = None


class ClockStatusResponse(CamelModel):
    is_clocked: bool
    record_id: Optional[int] = None
    rotation_id: Optional[str] = None
    clock_in_time: Optional[datetime] = None
    current_duration_seconds: int = 0


class TimeRecordOut(CamelModel):
    id: int
    rotation_id: str
    status: str
    clock_in_time: datetime
    clock_out_time: Optional[datetime] = None
    total_hours: Optional[str] = None
    verification_status: str
    notes: Optional[str] = None


@router.post("/in", response_model=ClockInResponse)
def clock_in(
    request: ClockInRequest,
    user: CurrentUser = Depends(require_student),
    service: AttendanceService = Depends(get_attendance_service),
):
    """
    Clock the calling student in.

    409 ALREADY_CLOCKED_IN carries the open record's id so a retrying client
    can treat it as success.
    """
    try:
        result = service.clock_in(
            user.user_id,
            request.rotation_id,
            timestamp=request.timestamp,
            synced_timestamp=request.synced_timestamp,
            location=request.location.to_sample() if request.location else None,
            notes=request.notes,
            client_id=request.client_id,
            client_time=request.client_time,
            drift_ms=request.drift_ms,
        )
    except AttendanceError as exc:
        raise to_http_exception(exc) from exc

    return ClockInResponse(
        is_clocked=result.is_clocked,
        record_id=result.record_id,
        clock_in_time=result.clock_in_time,
        verification_status=result.verification_status,
        verification=VerificationOut.from_result(result.verification),
        sync_data=SyncDataOut.from_sync_data(result.sync_data),
    )


@router.post("/out", response_model=ClockOutResponse)
def clock_out(
    request: ClockOutRequest,
    user: CurrentUser = Depends(require_student),
    service: AttendanceService = Depends(get_attendance_service),
):
    """Clock the calling student out. A failed location check flags the record."""
    try:
        result = service.clock_out(
            user.user_id,
            time_record_id=request.time_record_id,
            timestamp=request.timestamp,
            synced_timestamp=request.synced_timestamp,
            location=request.location.to_sample() if request.location else None,
            notes=request.notes,
            client_id=request.client_id,
            client_time=request.client_time,
            drift_ms=request.drift_ms,
            confirm_override=request.confirm_override,
        )
    except AttendanceError as exc:
        raise to_http_exception(exc) from exc

    return ClockOutResponse(
        record_id=result.record_id,
        total_hours=result.total_hours,
        duration_seconds=result.duration_seconds,
        clock_in_time=result.clock_in_time,
        clock_out_time=result.clock_out_time,
        verification_status=result.verification_status,
        verification=VerificationOut.from_result(result.verification),
        sync_data=SyncDataOut.from_sync_data(result.sync_data),
    )


@router.get("/status", response_model=ClockStatusResponse)
def clock_status(
    user: CurrentUser = Depends(get_current_user),
    service: AttendanceService = Depends(get_attendance_service),
):
    """Whether the caller is clocked in, and for how long."""
    status = service.get_status(user.user_id)
    return ClockStatusResponse(
        is_clocked=status.is_clocked,
        record_id=status.record_id,
        rotation_id=status.rotation_id,
        clock_in_time=status.clock_in_time,
        current_duration_seconds=status.current_duration_seconds,
    )


@router.get("/history", response_model=List[TimeRecordOut])
def clock_history(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    service: AttendanceService = Depends(get_attendance_service),
):
    """The caller's time records, newest first."""
    records = service.history(user.user_id, limit=limit, offset=offset)
    return [TimeRecordOut.model_validate(r) for r in records]
