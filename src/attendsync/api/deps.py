"""
FastAPI dependencies: caller identity and service construction.

Authentication happens upstream; the authenticating proxy forwards the
caller as ``X-User-Id`` / ``X-User-Role`` headers. Services are built per
request from the engine and drift estimator stored on ``app.state``.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from attendsync.attendance.service import AttendanceService
from attendsync.config import get_settings
from attendsync.location.sites import DatabaseSiteLookup
from attendsync.location.verifier import LocationVerifier
from attendsync.monitoring.status import SyncMonitor
from attendsync.timesync.drift import DriftEstimator
from attendsync.timesync.registry import SyncSessionRegistry
from attendsync.timesync.service import TimeSyncService

STUDENT_ROLE = "student"


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    role: str


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> CurrentUser:
    if not x_user_id:
        raise HTTPException(
            status_code=401,
            detail={"code": "AUTH_REQUIRED", "message": "Authentication required"},
        )
    return CurrentUser(user_id=x_user_id, role=(x_user_role or "").lower())


def require_student(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Only students clock themselves in and out."""
    if user.role != STUDENT_ROLE:
        raise HTTPException(
            status_code=403,
            detail={"code": "INSUFFICIENT_PERMISSIONS", "message": "Access denied. Students only."},
        )
    return user


def get_db_engine(request: Request):
    return request.app.state.engine


def get_estimator(request: Request) -> DriftEstimator:
    return request.app.state.estimator


def get_registry(engine=Depends(get_db_engine)) -> SyncSessionRegistry:
    settings = get_settings()
    return SyncSessionRegistry(
        engine, inactivity_window=timedelta(hours=settings.session_inactivity_hours)
    )


def get_location_verifier() -> LocationVerifier:
    return LocationVerifier(accuracy_threshold_m=get_settings().location_accuracy_threshold_m)


def get_site_lookup(engine=Depends(get_db_engine)) -> DatabaseSiteLookup:
    return DatabaseSiteLookup(engine, default_radius_m=get_settings().default_geofence_radius_m)


def get_attendance_service(
    engine=Depends(get_db_engine),
    registry: SyncSessionRegistry = Depends(get_registry),
    estimator: DriftEstimator = Depends(get_estimator),
    verifier: LocationVerifier = Depends(get_location_verifier),
    sites: DatabaseSiteLookup = Depends(get_site_lookup),
) -> AttendanceService:
    settings = get_settings()
    return AttendanceService(
        engine,
        registry=registry,
        estimator=estimator,
        verifier=verifier,
        sites=sites,
        max_future_skew=timedelta(seconds=settings.max_future_skew_seconds),
        max_past_skew=timedelta(seconds=settings.max_past_skew_seconds),
        require_location_override=settings.require_location_override,
    )


def get_time_sync_service(
    registry: SyncSessionRegistry = Depends(get_registry),
    estimator: DriftEstimator = Depends(get_estimator),
) -> TimeSyncService:
    return TimeSyncService(registry, estimator)


def get_sync_monitor(
    registry: SyncSessionRegistry = Depends(get_registry),
    estimator: DriftEstimator = Depends(get_estimator),
) -> SyncMonitor:
    return SyncMonitor(estimator, registry)
