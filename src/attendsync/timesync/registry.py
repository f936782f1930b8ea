"""
SyncSessionRegistry: which client devices are known, and whether they are live.

Sessions expire lazily: a lookup that finds ``last_seen_at`` older than the
inactivity window flips the row to "expired" before returning it. The
scheduler's sweep does the same in bulk. An expired session cannot receive
new sync events but never affects attendance already recorded.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from attendsync.errors import SessionExpired, SessionNotFound
from attendsync.models.sync import SESSION_ACTIVE, SESSION_EXPIRED, SyncEvent, SyncSession
from attendsync.timesync.timestamps import utcnow

logger = logging.getLogger(__name__)


class SyncSessionRegistry:
    def __init__(self, engine, *, inactivity_window: timedelta = timedelta(hours=24)):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            inactivity_window: how long a session may go unseen before it expires.
        """
        self.engine = engine
        self.inactivity_window = inactivity_window

    def register(
        self,
        client_id: str,
        *,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SyncSession:
        """
        Idempotent registration.

        An active session has its ``last_seen_at`` refreshed; an unknown one is
        created; an expired one is reactivated under the same client id.
        """
        now = now or utcnow()
        with Session(self.engine) as s:
            existing = self._get(s, client_id)
            if existing is None:
                session = SyncSession(
                    client_id=client_id,
                    user_id=user_id,
                    status=SESSION_ACTIVE,
                    registered_at=now,
                    last_seen_at=now,
                )
                s.add(session)
                try:
                    s.commit()
                except IntegrityError:
                    # Another request registered the same client first.
                    s.rollback()
                    existing = self._get(s, client_id)
                else:
                    s.refresh(session)
                    logger.info("Registered sync session %s", client_id)
                    return session

            if existing.status != SESSION_ACTIVE or self._is_stale(existing, now):
                existing.status = SESSION_ACTIVE
                existing.registered_at = now
                logger.info("Reactivated sync session %s", client_id)
            existing.last_seen_at = now
            if user_id and not existing.user_id:
                existing.user_id = user_id
            s.add(existing)
            s.commit()
            s.refresh(existing)
            return existing

    def lookup(self, client_id: str, *, now: Optional[datetime] = None) -> SyncSession:
        """Return the session, expiring it first if it has gone stale. Raises SessionNotFound."""
        now = now or utcnow()
        with Session(self.engine) as s:
            session = self._get(s, client_id)
            if session is None:
                raise SessionNotFound(f"No sync session for client {client_id}", client_id=client_id)
            if session.status == SESSION_ACTIVE and self._is_stale(session, now):
                session.status = SESSION_EXPIRED
                s.add(session)
                s.commit()
                s.refresh(session)
                logger.info("Sync session %s expired (last seen %s)", client_id, session.last_seen_at)
            return session

    def require_active(self, client_id: str, *, now: Optional[datetime] = None) -> SyncSession:
        """Like lookup(), but an expired session raises SessionExpired."""
        session = self.lookup(client_id, now=now)
        if session.status != SESSION_ACTIVE:
            raise SessionExpired(f"Sync session for client {client_id} has expired", client_id=client_id)
        return session

    def touch(self, client_id: str, *, drift_ms: Optional[int] = None, now: Optional[datetime] = None) -> None:
        """Record that the client was just heard from."""
        now = now or utcnow()
        values: Dict[str, Any] = {"last_seen_at": now}
        if drift_ms is not None:
            values["last_drift_ms"] = drift_ms
        with Session(self.engine) as s:
            s.connection().execute(
                update(SyncSession).where(SyncSession.client_id == client_id).values(**values)
            )
            s.commit()

    def append_event(
        self,
        client_id: str,
        event_type: str,
        *,
        server_time: datetime,
        client_time: Optional[datetime] = None,
        drift_ms: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SyncEvent:
        """Insert one immutable SyncEvent row."""
        event = SyncEvent(
            session_id=client_id,
            event_type=event_type,
            server_time=server_time,
            client_time=client_time or server_time,
            drift_ms=drift_ms,
            metadata_json=json.dumps(metadata, default=str) if metadata else None,
        )
        with Session(self.engine) as s:
            s.add(event)
            s.commit()
            s.refresh(event)
        return event

    def expire_stale(self, *, now: Optional[datetime] = None) -> int:
        """Bulk-expire every active session past the inactivity window. Returns rows changed."""
        cutoff = (now or utcnow()) - self.inactivity_window
        with Session(self.engine) as s:
            result = s.connection().execute(
                update(SyncSession)
                .where(SyncSession.status == SESSION_ACTIVE, SyncSession.last_seen_at < cutoff)
                .values(status=SESSION_EXPIRED)
            )
            s.commit()
            return result.rowcount or 0

    def counts(self, *, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Session totals keyed by effective status. Stale sessions not yet
        flipped by a lookup or sweep count as expired; nothing is written.
        """
        cutoff = (now or utcnow()) - self.inactivity_window
        with Session(self.engine) as s:
            total = s.exec(select(func.count()).select_from(SyncSession)).one()
            active = s.exec(
                select(func.count())
                .select_from(SyncSession)
                .where(SyncSession.status == SESSION_ACTIVE, SyncSession.last_seen_at >= cutoff)
            ).one()
        return {SESSION_ACTIVE: active, SESSION_EXPIRED: total - active}

    def last_seen(self) -> Optional[datetime]:
        with Session(self.engine) as s:
            return s.exec(select(func.max(SyncSession.last_seen_at))).first()

    def _get(self, s: Session, client_id: str) -> Optional[SyncSession]:
        return s.exec(select(SyncSession).where(SyncSession.client_id == client_id)).first()

    def _is_stale(self, session: SyncSession, now: datetime) -> bool:
        return now - session.last_seen_at > self.inactivity_window
