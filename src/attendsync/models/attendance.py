"""Attendance models: time records and the rotation → site lookup table."""
from datetime import datetime
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel

from attendsync.db.types import UTCDateTime
from attendsync.timesync.timestamps import utcnow

RECORD_OPEN = "open"
RECORD_CLOSED = "closed"

VERIFIED = "verified"
UNVERIFIED = "unverified"
FLAGGED = "flagged"


class TimeRecord(SQLModel, table=True):
    """
    One clock-in → clock-out attendance session.

    At most one row per user may have status="open"; the partial unique index
    below is what makes two racing clock-ins resolve to a single winner.
    """

    __table_args__ = (
        Index(
            "ux_timerecord_open_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'open'"),
            postgresql_where=text("status = 'open'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    rotation_id: str = Field(index=True)
    status: str = Field(default=RECORD_OPEN)  # "open", "closed"

    clock_in_time: datetime = Field(sa_type=UTCDateTime)
    clock_out_time: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    duration_seconds: Optional[float] = None
    total_hours: Optional[str] = None  # "HH:MM:SS"
    notes: Optional[str] = None

    # Location captured at clock-in
    clock_in_latitude: Optional[float] = None
    clock_in_longitude: Optional[float] = None
    clock_in_accuracy_m: Optional[float] = None
    clock_in_location_source: Optional[str] = None  # "gps", "network", "manual"
    clock_in_location_captured_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    # Location captured at clock-out
    clock_out_latitude: Optional[float] = None
    clock_out_longitude: Optional[float] = None
    clock_out_accuracy_m: Optional[float] = None
    clock_out_location_source: Optional[str] = None
    clock_out_location_captured_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    # Site geofence as resolved at clock-in; clock-out verifies against this
    site_latitude: Optional[float] = None
    site_longitude: Optional[float] = None
    site_radius_m: Optional[float] = None

    clock_in_verification: str = Field(default=UNVERIFIED)
    clock_out_verification: Optional[str] = None
    verification_status: str = Field(default=UNVERIFIED)  # "verified", "unverified", "flagged"

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class RotationSite(SQLModel, table=True):
    """Clinical site coordinate for a rotation. Rotations without a fixed site leave lat/lng null."""

    rotation_id: str = Field(primary_key=True)
    name: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius_m: Optional[float] = None  # falls back to settings.default_geofence_radius_m
