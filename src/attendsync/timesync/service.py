"""
TimeSyncService: drift measurement and the server time authority.

Flow for a measurement:
  1. Confirm the client's session is registered and active
  2. Compute drift against server time → update rolling stats
  3. Store the latest drift on the session, append a SyncEvent
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from attendsync.errors import InvalidTimestamp, PersistenceFailure, SessionExpired, SessionNotFound
from attendsync.models.sync import SESSION_ACTIVE, SyncSession
from attendsync.timesync.drift import DriftEstimator, DriftSample
from attendsync.timesync.registry import SyncSessionRegistry
from attendsync.timesync.timestamps import TimestampInput, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

EVENT_DRIFT_MEASUREMENT = "drift_measurement"
EVENT_HEARTBEAT = "heartbeat"
MEASUREMENT_EVENT_TYPES = (EVENT_DRIFT_MEASUREMENT, EVENT_HEARTBEAT)


@dataclass(frozen=True)
class DriftMeasurement:
    client_id: str
    server_time: datetime
    client_time: datetime
    drift_ms: int
    accuracy: str
    trend: str


@dataclass(frozen=True)
class TimeAuthority:
    server_time: datetime
    client_id: Optional[str] = None
    session_active: Optional[bool] = None
    last_seen_at: Optional[datetime] = None
    stats: Optional[DriftSample] = None


class TimeSyncService:
    def __init__(self, registry: SyncSessionRegistry, estimator: DriftEstimator, *, clock=utcnow):
        self.registry = registry
        self.estimator = estimator
        self._clock = clock

    def register(self, client_id: str, *, user_id: Optional[str] = None) -> SyncSession:
        try:
            return self.registry.register(client_id, user_id=user_id, now=self._clock())
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Could not register client {client_id}") from exc

    def measure_drift(
        self,
        client_id: str,
        client_time: TimestampInput,
        *,
        event_type: str = EVENT_DRIFT_MEASUREMENT,
    ) -> DriftMeasurement:
        """
        Record one drift sample for a registered client.

        Raises:
            SessionNotFound / SessionExpired: client may not write sync events.
            InvalidTimestamp: client time missing or malformed.
            PersistenceFailure: the event could not be stored.
        """
        server_time = self._clock()
        try:
            self.registry.require_active(client_id, now=server_time)
        except (SessionNotFound, SessionExpired):
            self.estimator.record_error()
            raise

        if event_type not in MEASUREMENT_EVENT_TYPES:
            raise ValueError(f"Unsupported sync event type: {event_type}")

        if client_time is None or client_time == "":
            self.estimator.record_error()
            raise InvalidTimestamp("clientTime is required for a drift measurement", field="clientTime")

        estimate = self.estimator.estimate(client_time, server_time, client_id=client_id)
        parsed_client_time = parse_timestamp(client_time, field="clientTime")

        try:
            self.registry.touch(client_id, drift_ms=estimate.drift_ms, now=server_time)
            self.registry.append_event(
                client_id,
                event_type,
                server_time=server_time,
                client_time=parsed_client_time,
                drift_ms=estimate.drift_ms,
                metadata={"accuracy": estimate.accuracy, "trend": estimate.trend},
            )
        except SQLAlchemyError as exc:
            self.estimator.record_error()
            raise PersistenceFailure(f"Could not store sync event for {client_id}") from exc

        logger.debug(
            "Drift for %s: %dms (%s, %s)", client_id, estimate.drift_ms, estimate.accuracy, estimate.trend
        )
        return DriftMeasurement(
            client_id=client_id,
            server_time=server_time,
            client_time=parsed_client_time,
            drift_ms=estimate.drift_ms,
            accuracy=estimate.accuracy,
            trend=estimate.trend,
        )

    def time_authority(self, client_id: Optional[str] = None) -> TimeAuthority:
        """Server time, plus the client's session state and drift stats when it is known."""
        server_time = self._clock()
        if not client_id:
            return TimeAuthority(server_time=server_time)

        try:
            session = self.registry.lookup(client_id, now=server_time)
        except SessionNotFound:
            return TimeAuthority(server_time=server_time, client_id=client_id, session_active=False)

        return TimeAuthority(
            server_time=server_time,
            client_id=client_id,
            session_active=session.status == SESSION_ACTIVE,
            last_seen_at=session.last_seen_at,
            stats=self.estimator.stats(client_id),
        )
