"""Time-sync routes: client registration, drift measurement, time authority, monitoring."""
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import Field

from attendsync.api.deps import (
    CurrentUser,
    get_current_user,
    get_sync_monitor,
    get_time_sync_service,
)
from attendsync.api.errors import to_http_exception
from attendsync.api.schemas import CamelModel, TimestampValue
from attendsync.errors import AttendanceError
from attendsync.monitoring.status import SyncMonitor
from attendsync.timesync.service import EVENT_DRIFT_MEASUREMENT, TimeSyncService

router = APIRouter()


class RegisterRequest(CamelModel):
    client_id: str = Field(min_length=1, max_length=255)


class SessionOut(CamelModel):
    client_id: str
    status: str
    registered_at: datetime
    last_seen_at: datetime
    last_drift_ms: Optional[int] = None


class DriftRequest(CamelModel):
    client_id: str = Field(min_length=1)
    client_time: TimestampValue = None
    event_type: Literal["drift_measurement", "heartbeat"] = EVENT_DRIFT_MEASUREMENT


class DriftResponse(CamelModel):
    client_id: str
    server_time: datetime
    client_time: datetime
    drift_ms: int
    accuracy: str
    trend: str


class SyncStatsOut(CamelModel):
    session_active: bool
    last_seen_at: Optional[datetime] = None
    sample_count: int = 0
    average_drift_ms: float = 0.0
    max_drift_ms: int = 0
    std_dev_ms: float = 0.0
    trend: str = "stable"


class TimeAuthorityResponse(CamelModel):
    server_time: datetime
    timestamp: int  # epoch milliseconds
    client_id: Optional[str] = None
    sync_stats: Optional[SyncStatsOut] = None


class SyncStatusResponse(CamelModel):
    server_time: datetime
    is_connected: bool
    accuracy: str
    average_drift: float
    max_drift: int
    connection_health: float
    quality_score: int
    uptime: float  # seconds
    sync_count: int
    error_count: int
    active_sessions: int
    expired_sessions: int
    last_sync_time: Optional[datetime] = None
    recommendations: List[str]


@router.post("/sessions", response_model=SessionOut)
def register_session(
    request: RegisterRequest,
    user: CurrentUser = Depends(get_current_user),
    service: TimeSyncService = Depends(get_time_sync_service),
):
    """Register (or refresh) a client device for synchronized clocking."""
    try:
        session = service.register(request.client_id, user_id=user.user_id)
    except AttendanceError as exc:
        raise to_http_exception(exc) from exc
    return SessionOut.model_validate(session)


@router.post("/drift", response_model=DriftResponse)
def measure_drift(
    request: DriftRequest,
    user: CurrentUser = Depends(get_current_user),
    service: TimeSyncService = Depends(get_time_sync_service),
):
    """Report the client's clock; the server answers with the measured drift."""
    try:
        m = service.measure_drift(request.client_id, request.client_time, event_type=request.event_type)
    except AttendanceError as exc:
        raise to_http_exception(exc) from exc
    return DriftResponse(
        client_id=m.client_id,
        server_time=m.server_time,
        client_time=m.client_time,
        drift_ms=m.drift_ms,
        accuracy=m.accuracy,
        trend=m.trend,
    )


@router.get("/time", response_model=TimeAuthorityResponse)
def time_authority(
    client_id: Optional[str] = Query(default=None, alias="clientId"),
    user: CurrentUser = Depends(get_current_user),
    service: TimeSyncService = Depends(get_time_sync_service),
):
    """Authoritative server time, with drift stats for a known client."""
    authority = service.time_authority(client_id)
    server_ms = int(authority.server_time.timestamp() * 1000)

    sync_stats = None
    if authority.client_id is not None:
        stats = authority.stats
        sync_stats = SyncStatsOut(
            session_active=bool(authority.session_active),
            last_seen_at=authority.last_seen_at,
            sample_count=stats.count if stats else 0,
            average_drift_ms=stats.average_drift_ms if stats else 0.0,
            max_drift_ms=stats.max_drift_ms if stats else 0,
            std_dev_ms=stats.std_dev_ms if stats else 0.0,
            trend=stats.trend if stats else "stable",
        )
    return TimeAuthorityResponse(
        server_time=authority.server_time,
        timestamp=server_ms,
        client_id=authority.client_id,
        sync_stats=sync_stats,
    )


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(
    user: CurrentUser = Depends(get_current_user),
    monitor: SyncMonitor = Depends(get_sync_monitor),
):
    """Aggregated sync quality for dashboards."""
    report = monitor.status()
    return SyncStatusResponse(
        server_time=report.server_time,
        is_connected=report.is_connected,
        accuracy=report.accuracy,
        average_drift=report.average_drift_ms,
        max_drift=report.max_drift_ms,
        connection_health=report.connection_health,
        quality_score=report.quality_score,
        uptime=report.uptime_seconds,
        sync_count=report.sync_count,
        error_count=report.error_count,
        active_sessions=report.active_sessions,
        expired_sessions=report.expired_sessions,
        last_sync_time=report.last_sync_time,
        recommendations=report.recommendations,
    )
