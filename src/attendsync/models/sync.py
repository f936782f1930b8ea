"""Time-sync models: client sessions, the append-only event log, and clock annotations."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from attendsync.db.types import UTCDateTime
from attendsync.timesync.timestamps import utcnow

SESSION_ACTIVE = "active"
SESSION_EXPIRED = "expired"


class SyncSession(SQLModel, table=True):
    """A registered client device. Looked up (never mutated) during clock-in."""

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: str = Field(unique=True, index=True)
    user_id: Optional[str] = Field(default=None, index=True)
    status: str = SESSION_ACTIVE  # "active", "expired"
    registered_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    last_seen_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    last_drift_ms: Optional[int] = None


class SyncEvent(SQLModel, table=True):
    """Audit log entry. Rows are inserted once and never updated."""

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(index=True)  # SyncSession.client_id
    event_type: str  # "drift_measurement", "heartbeat", "synchronized_clock_in", ...
    server_time: datetime = Field(index=True, sa_type=UTCDateTime)
    client_time: datetime = Field(sa_type=UTCDateTime)
    drift_ms: int = 0  # signed: server - client
    metadata_json: Optional[str] = None


class SynchronizedClockRecord(SQLModel, table=True):
    """Drift annotation for a TimeRecord written by a synced client. Best-effort."""

    id: Optional[int] = Field(default=None, primary_key=True)
    time_record_id: int = Field(foreign_key="timerecord.id", unique=True, index=True)
    session_id: str = Field(index=True)

    synced_clock_in: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    synced_clock_out: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    clock_in_drift_ms: Optional[int] = None  # absolute value
    clock_out_drift_ms: Optional[int] = None

    sync_accuracy: str = "low"  # "high", "medium", "low"
    verification_status: str = "unverified"  # "verified", "unverified", "flagged"

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
