"""
AttendanceService: the clock-in / clock-out state machine.

Per user: NOT_CLOCKED_IN → CLOCKED_IN (one open TimeRecord) → NOT_CLOCKED_IN.
A closed record never reopens; the next clock-in creates a new row.

Clock-in flow:
  1. Reject if the user already has an open record (AlreadyClockedIn)
  2. Resolve the authoritative timestamp (synced → client → server)
     and reject it if it is outside the allowed skew around server time
  3. If the client has an active sync session, estimate drift
     (the sample joins the client's statistics only once step 5 commits)
  4. If a location sample came with the request, verify it against the site
  5. Commit the TimeRecord in its own transaction
  6. Best-effort: SynchronizedClockRecord, then a SyncEvent

Step 5 is the only write that can fail the request. The open-record check in
step 1 is advisory; the partial unique index on (user_id WHERE status='open')
decides the winner when two clock-ins race, and the loser gets
AlreadyClockedIn. Clock-out closes the record with a compare-and-swap UPDATE
(``WHERE status='open'``) so a double clock-out also has one winner.

Location failures never block clock-in. At clock-out they are advisory unless
``require_location_override`` is set, in which case the caller must confirm.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from attendsync.errors import (
    AlreadyClockedIn,
    InvalidDuration,
    InvalidTimestamp,
    LocationOverrideRequired,
    NotClockedIn,
    PersistenceFailure,
    SessionNotFound,
)
from attendsync.location.sites import SiteLookup
from attendsync.location.verifier import (
    LocationSample,
    LocationVerificationResult,
    LocationVerifier,
    SiteGeofence,
)
from attendsync.models.attendance import (
    FLAGGED,
    RECORD_CLOSED,
    RECORD_OPEN,
    UNVERIFIED,
    VERIFIED,
    TimeRecord,
)
from attendsync.models.sync import SESSION_ACTIVE, SynchronizedClockRecord
from attendsync.timesync.drift import DriftEstimate, DriftEstimator, reported_estimate
from attendsync.timesync.registry import SyncSessionRegistry
from attendsync.timesync.timestamps import (
    TimestampInput,
    format_duration,
    parse_timestamp,
    resolve_authoritative_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

EVENT_SYNCED_CLOCK_IN = "synchronized_clock_in"
EVENT_SYNCED_CLOCK_OUT = "synchronized_clock_out"

_STATUS_RANK = {UNVERIFIED: 0, VERIFIED: 1, FLAGGED: 2}


def verification_status_for(result: Optional[LocationVerificationResult]) -> str:
    """verified / flagged from a verdict; unverified when nothing was checked."""
    if result is None or result.skipped:
        return UNVERIFIED
    return VERIFIED if result.is_valid else FLAGGED


def combine_verification(*statuses: Optional[str]) -> str:
    """Overall status of a record: flagged beats verified beats unverified."""
    present = [s for s in statuses if s]
    if not present:
        return UNVERIFIED
    return max(present, key=lambda s: _STATUS_RANK.get(s, 0))


@dataclass(frozen=True)
class SyncData:
    client_id: str
    server_time: datetime
    corrected_timestamp: datetime
    drift_ms: int
    sync_accuracy: str
    trend: str
    session_active: bool = True


@dataclass
class ClockInResult:
    is_clocked: bool
    record_id: int
    clock_in_time: datetime
    verification_status: str
    verification: Optional[LocationVerificationResult] = None
    sync_data: Optional[SyncData] = None


@dataclass
class ClockOutResult:
    record_id: int
    clock_in_time: datetime
    clock_out_time: datetime
    duration_seconds: float
    total_hours: str
    verification_status: str
    verification: Optional[LocationVerificationResult] = None
    sync_data: Optional[SyncData] = None


@dataclass
class ClockStatus:
    is_clocked: bool
    record_id: Optional[int] = None
    rotation_id: Optional[str] = None
    clock_in_time: Optional[datetime] = None
    current_duration_seconds: int = 0


@dataclass
class _SyncContext:
    client_id: str
    estimate: DriftEstimate
    warnings: List[str] = field(default_factory=list)


class AttendanceService:
    """Owns TimeRecord. All writes to it go through here."""

    def __init__(
        self,
        engine,
        *,
        registry: SyncSessionRegistry,
        estimator: DriftEstimator,
        verifier: LocationVerifier,
        sites: SiteLookup,
        max_future_skew: timedelta = timedelta(minutes=5),
        max_past_skew: timedelta = timedelta(minutes=5),
        require_location_override: bool = False,
        clock=utcnow,
    ):
        self.engine = engine
        self.registry = registry
        self.estimator = estimator
        self.verifier = verifier
        self.sites = sites
        self.max_future_skew = max_future_skew
        self.max_past_skew = max_past_skew
        self.require_location_override = require_location_override
        self._clock = clock

    # ─── Transitions ──────────────────────────────────────────────────────────

    def clock_in(
        self,
        user_id: str,
        rotation_id: str,
        *,
        timestamp: TimestampInput = None,
        synced_timestamp: TimestampInput = None,
        location: Optional[LocationSample] = None,
        notes: Optional[str] = None,
        client_id: Optional[str] = None,
        client_time: TimestampInput = None,
        drift_ms: Optional[int] = None,
    ) -> ClockInResult:
        """
        Open a TimeRecord for the user.

        Raises:
            AlreadyClockedIn: an open record exists (retries land here).
            InvalidTimestamp: timestamp/syncedTimestamp malformed, or too far from server time.
            InvalidCoordinates: location sample is structurally invalid.
            PersistenceFailure: the TimeRecord could not be written.
        """
        server_now = self._clock()

        existing = self._find_open_record(user_id)
        if existing is not None:
            raise AlreadyClockedIn(user_id, existing.id)

        clock_in_time = self._resolve_timestamp(synced_timestamp, timestamp, server_now)
        sync = self._estimate_sync(client_id, client_time, drift_ms, server_now)

        site = self.sites.get_site(rotation_id)
        verification = self.verifier.verify(location, site) if location is not None else None
        status = verification_status_for(verification)
        if verification is not None and not verification.is_valid:
            logger.warning(
                "Clock-in for user %s flagged: %s", user_id, "; ".join(verification.errors)
            )

        record = TimeRecord(
            user_id=user_id,
            rotation_id=rotation_id,
            status=RECORD_OPEN,
            clock_in_time=clock_in_time,
            notes=notes,
            clock_in_verification=status,
            verification_status=status,
        )
        if site is not None:
            record.site_latitude = site.latitude
            record.site_longitude = site.longitude
            record.site_radius_m = site.radius_m
        if location is not None:
            record.clock_in_latitude = location.latitude
            record.clock_in_longitude = location.longitude
            record.clock_in_accuracy_m = location.accuracy_m
            record.clock_in_location_source = location.source
            record.clock_in_location_captured_at = location.captured_at or server_now

        record = self._insert_open_record(record)
        logger.info("User %s clocked in (record %s, %s)", user_id, record.id, status)

        sync_data = None
        if sync is not None:
            sync = self._record_sync(sync, server_now)
            sync_data = self._annotate_clock_in(record, sync, server_now, location)

        return ClockInResult(
            is_clocked=True,
            record_id=record.id,
            clock_in_time=record.clock_in_time,
            verification_status=status,
            verification=verification,
            sync_data=sync_data,
        )

    def clock_out(
        self,
        user_id: str,
        *,
        time_record_id: Optional[int] = None,
        timestamp: TimestampInput = None,
        synced_timestamp: TimestampInput = None,
        location: Optional[LocationSample] = None,
        notes: Optional[str] = None,
        client_id: Optional[str] = None,
        client_time: TimestampInput = None,
        drift_ms: Optional[int] = None,
        confirm_override: bool = False,
    ) -> ClockOutResult:
        """
        Close the user's open TimeRecord.

        Raises:
            NotClockedIn: no open record (or it was closed concurrently).
            InvalidTimestamp: timestamp/syncedTimestamp malformed, or too far from server time.
            InvalidDuration: resolved clock-out precedes clock-in; nothing is written.
            LocationOverrideRequired: strict mode, verification failed, no override.
            PersistenceFailure: the update could not be written.
        """
        server_now = self._clock()

        record = self._find_open_record(user_id, time_record_id=time_record_id)
        if record is None:
            raise NotClockedIn(f"User {user_id} has no open time record", user_id=user_id)

        clock_out_time = self._resolve_timestamp(synced_timestamp, timestamp, server_now)
        if clock_out_time < record.clock_in_time:
            raise InvalidDuration(
                f"Clock-out {clock_out_time.isoformat()} precedes clock-in "
                f"{record.clock_in_time.isoformat()}",
                record_id=record.id,
            )

        site = self._site_from_record(record)
        verification = None
        if location is not None:
            verification = self.verifier.verify(location, site)
            if verification.skipped:
                logger.info("Clock-out location for record %s not verified: no stored site", record.id)

        if verification is not None and not verification.is_valid:
            if self.require_location_override and not confirm_override:
                raise LocationOverrideRequired(
                    "Location verification failed; confirm to clock out anyway", verification
                )
            logger.warning(
                "Clock-out for record %s flagged%s: %s",
                record.id,
                " (override confirmed)" if confirm_override else "",
                "; ".join(verification.errors),
            )

        out_status = verification_status_for(verification)
        overall = combine_verification(record.verification_status, out_status)
        duration = (clock_out_time - record.clock_in_time).total_seconds()

        values = {
            "status": RECORD_CLOSED,
            "clock_out_time": clock_out_time,
            "duration_seconds": duration,
            "total_hours": format_duration(duration),
            "clock_out_verification": out_status,
            "verification_status": overall,
            "updated_at": server_now,
        }
        if notes:
            values["notes"] = f"{record.notes}\n{notes}" if record.notes else notes
        if location is not None:
            values.update(
                clock_out_latitude=location.latitude,
                clock_out_longitude=location.longitude,
                clock_out_accuracy_m=location.accuracy_m,
                clock_out_location_source=location.source,
                clock_out_location_captured_at=location.captured_at or server_now,
            )

        sync = self._estimate_sync(client_id, client_time, drift_ms, server_now)

        closed = self._close_open_record(record, values, user_id)
        logger.info("User %s clocked out (record %s, %s, %s)", user_id, closed.id, closed.total_hours, overall)

        if sync is not None:
            sync = self._record_sync(sync, server_now)

        sync_data = self._annotate_clock_out(closed, sync, server_now, overall)

        return ClockOutResult(
            record_id=closed.id,
            clock_in_time=closed.clock_in_time,
            clock_out_time=closed.clock_out_time,
            duration_seconds=closed.duration_seconds,
            total_hours=closed.total_hours,
            verification_status=overall,
            verification=verification,
            sync_data=sync_data,
        )

    # ─── Queries ──────────────────────────────────────────────────────────────

    def get_status(self, user_id: str) -> ClockStatus:
        record = self._find_open_record(user_id)
        if record is None:
            return ClockStatus(is_clocked=False)
        elapsed = (self._clock() - record.clock_in_time).total_seconds()
        return ClockStatus(
            is_clocked=True,
            record_id=record.id,
            rotation_id=record.rotation_id,
            clock_in_time=record.clock_in_time,
            current_duration_seconds=max(0, int(elapsed)),
        )

    def history(self, user_id: str, *, limit: int = 20, offset: int = 0) -> List[TimeRecord]:
        """User's records, newest clock-in first."""
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(TimeRecord)
                    .where(TimeRecord.user_id == user_id)
                    .order_by(TimeRecord.clock_in_time.desc())
                    .offset(offset)
                    .limit(limit)
                ).all()
            )

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _resolve_timestamp(
        self, synced_timestamp: TimestampInput, timestamp: TimestampInput, server_now: datetime
    ) -> datetime:
        resolved = resolve_authoritative_timestamp(
            parse_timestamp(synced_timestamp, field="syncedTimestamp"),
            parse_timestamp(timestamp, field="timestamp"),
            server_now,
        )
        if resolved - server_now > self.max_future_skew:
            raise InvalidTimestamp(
                f"Timestamp {resolved.isoformat()} is too far ahead of server time",
                field="timestamp",
            )
        if server_now - resolved > self.max_past_skew:
            raise InvalidTimestamp(
                f"Timestamp {resolved.isoformat()} is too far in the past",
                field="timestamp",
            )
        return resolved

    def _estimate_sync(
        self,
        client_id: Optional[str],
        client_time: TimestampInput,
        drift_ms: Optional[int],
        server_now: datetime,
    ) -> Optional[_SyncContext]:
        """
        Drift for a synced client, or None to proceed unsynchronized.

        Nothing is recorded here; see _record_sync.
        """
        if not client_id:
            return None
        try:
            session = self.registry.lookup(client_id, now=server_now)
        except SessionNotFound:
            logger.warning("Unknown sync client %s; recording unsynchronized", client_id)
            return None
        if session.status != SESSION_ACTIVE:
            logger.info("Sync session %s is %s; recording unsynchronized", client_id, session.status)
            return None

        try:
            if client_time is None and drift_ms is not None:
                estimate = reported_estimate(drift_ms)
            else:
                estimate = self.estimator.estimate(client_time, server_now)
        except InvalidTimestamp as exc:
            logger.warning("Ignoring client time from %s: %s", client_id, exc)
            return None
        return _SyncContext(client_id=client_id, estimate=estimate)

    def _record_sync(self, sync: _SyncContext, server_now: datetime) -> _SyncContext:
        """Add the sample to the client's rolling stats once the transition is committed."""
        estimate = self.estimator.record_estimate(sync.client_id, sync.estimate, at=server_now)
        return _SyncContext(client_id=sync.client_id, estimate=estimate, warnings=sync.warnings)

    def _find_open_record(
        self, user_id: str, *, time_record_id: Optional[int] = None
    ) -> Optional[TimeRecord]:
        query = select(TimeRecord).where(
            TimeRecord.user_id == user_id, TimeRecord.status == RECORD_OPEN
        )
        if time_record_id is not None:
            query = query.where(TimeRecord.id == time_record_id)
        with Session(self.engine) as s:
            return s.exec(query).first()

    def _insert_open_record(self, record: TimeRecord) -> TimeRecord:
        try:
            with Session(self.engine) as s:
                s.add(record)
                s.commit()
                s.refresh(record)
                return record
        except IntegrityError as exc:
            # Lost the race to a concurrent clock-in for the same user.
            winner = self._find_open_record(record.user_id)
            raise AlreadyClockedIn(record.user_id, winner.id if winner else None) from exc
        except SQLAlchemyError as exc:
            logger.exception("TimeRecord insert failed for user %s", record.user_id)
            raise PersistenceFailure("Could not record clock-in") from exc

    def _close_open_record(self, record: TimeRecord, values: dict, user_id: str) -> TimeRecord:
        try:
            with Session(self.engine) as s:
                result = s.connection().execute(
                    update(TimeRecord)
                    .where(TimeRecord.id == record.id, TimeRecord.status == RECORD_OPEN)
                    .values(**values)
                )
                if result.rowcount != 1:
                    s.rollback()
                    raise NotClockedIn(
                        f"Time record {record.id} was already closed", user_id=user_id
                    )
                s.commit()
                return s.get(TimeRecord, record.id)
        except SQLAlchemyError as exc:
            logger.exception("TimeRecord close failed for record %s", record.id)
            raise PersistenceFailure("Could not record clock-out") from exc

    def _site_from_record(self, record: TimeRecord) -> Optional[SiteGeofence]:
        if record.site_latitude is None or record.site_longitude is None or record.site_radius_m is None:
            return None
        return SiteGeofence(
            latitude=record.site_latitude,
            longitude=record.site_longitude,
            radius_m=record.site_radius_m,
        )

    def _annotate_clock_in(
        self,
        record: TimeRecord,
        sync: _SyncContext,
        server_now: datetime,
        location: Optional[LocationSample],
    ) -> Optional[SyncData]:
        """Secondary writes. Failures are logged and only drop sync_data."""
        estimate = sync.estimate
        sync_data = None
        try:
            with Session(self.engine) as s:
                s.add(SynchronizedClockRecord(
                    time_record_id=record.id,
                    session_id=sync.client_id,
                    synced_clock_in=record.clock_in_time,
                    clock_in_drift_ms=abs(estimate.drift_ms),
                    sync_accuracy=estimate.accuracy,
                    verification_status=record.verification_status,
                ))
                s.commit()
            sync_data = self._sync_data(sync, server_now, record.clock_in_time)
        except Exception:
            logger.exception("Failed to write synchronized clock record for %s", record.id)

        try:
            self.registry.append_event(
                sync.client_id,
                EVENT_SYNCED_CLOCK_IN,
                server_time=server_now,
                client_time=server_now - timedelta(milliseconds=estimate.drift_ms),
                drift_ms=estimate.drift_ms,
                metadata={
                    "timeRecordId": record.id,
                    "rotationId": record.rotation_id,
                    "location": _location_metadata(location),
                },
            )
        except Exception:
            logger.exception("Failed to append clock-in sync event for %s", record.id)

        return sync_data

    def _annotate_clock_out(
        self,
        record: TimeRecord,
        sync: Optional[_SyncContext],
        server_now: datetime,
        overall_status: str,
    ) -> Optional[SyncData]:
        """
        Update the record's drift annotation with clock-out data. Unsynced
        clock-outs still carry the final verification status onto an
        existing annotation.
        """
        sync_data = None
        try:
            with Session(self.engine) as s:
                annotation = s.exec(
                    select(SynchronizedClockRecord).where(
                        SynchronizedClockRecord.time_record_id == record.id
                    )
                ).first()
                if annotation is None and sync is not None:
                    annotation = SynchronizedClockRecord(
                        time_record_id=record.id, session_id=sync.client_id
                    )
                if annotation is not None:
                    annotation.verification_status = overall_status
                    annotation.updated_at = server_now
                    if sync is not None:
                        annotation.synced_clock_out = record.clock_out_time
                        annotation.clock_out_drift_ms = abs(sync.estimate.drift_ms)
                        annotation.sync_accuracy = sync.estimate.accuracy
                    s.add(annotation)
                    s.commit()
            if sync is not None:
                sync_data = self._sync_data(sync, server_now, record.clock_out_time)
        except Exception:
            logger.exception("Failed to update synchronized clock record for %s", record.id)

        if sync is not None:
            try:
                self.registry.append_event(
                    sync.client_id,
                    EVENT_SYNCED_CLOCK_OUT,
                    server_time=server_now,
                    client_time=server_now - timedelta(milliseconds=sync.estimate.drift_ms),
                    drift_ms=sync.estimate.drift_ms,
                    metadata={"timeRecordId": record.id, "totalHours": record.total_hours},
                )
            except Exception:
                logger.exception("Failed to append clock-out sync event for %s", record.id)

        return sync_data

    def _sync_data(self, sync: _SyncContext, server_now: datetime, corrected: datetime) -> SyncData:
        return SyncData(
            client_id=sync.client_id,
            server_time=server_now,
            corrected_timestamp=corrected,
            drift_ms=sync.estimate.drift_ms,
            sync_accuracy=sync.estimate.accuracy,
            trend=sync.estimate.trend,
        )


def _location_metadata(location: Optional[LocationSample]) -> Optional[dict]:
    if location is None:
        return None
    return {
        "latitude": location.latitude,
        "longitude": location.longitude,
        "accuracy": location.accuracy_m,
        "source": location.source,
    }
