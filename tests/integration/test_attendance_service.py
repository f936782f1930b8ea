"""
Integration tests for AttendanceService.

Real SyncSessionRegistry, DriftEstimator and LocationVerifier against an
in-memory SQLite DB; the service clock is a FakeClock from conftest.
"""
import json
import math
from datetime import timedelta, timezone
from unittest.mock import patch

import pytest
from sqlmodel import Session, select

from attendsync.attendance.service import (
    EVENT_SYNCED_CLOCK_IN,
    EVENT_SYNCED_CLOCK_OUT,
    AttendanceService,
    combine_verification,
)
from attendsync.errors import (
    AlreadyClockedIn,
    InvalidCoordinates,
    InvalidDuration,
    InvalidTimestamp,
    LocationOverrideRequired,
    NotClockedIn,
    PersistenceFailure,
)
from attendsync.location.sites import DatabaseSiteLookup
from attendsync.location.verifier import EARTH_RADIUS_M, LocationSample, LocationVerifier
from attendsync.models.attendance import FLAGGED, RECORD_CLOSED, RECORD_OPEN, UNVERIFIED, VERIFIED, TimeRecord
from attendsync.models.sync import SyncEvent, SynchronizedClockRecord
from attendsync.timesync.drift import ACCURACY_HIGH, ACCURACY_LOW

SITE_LAT = 40.7128
SITE_LNG = -74.0060


def _at_site(accuracy=8.0) -> LocationSample:
    return LocationSample(latitude=SITE_LAT, longitude=SITE_LNG, accuracy_m=accuracy)


def _meters_north(meters: float, accuracy=8.0) -> LocationSample:
    return LocationSample(
        latitude=SITE_LAT + math.degrees(meters / EARTH_RADIUS_M), longitude=SITE_LNG, accuracy_m=accuracy
    )


def _records(engine):
    return _rows(engine, TimeRecord)


def _rows(engine, model):
    with Session(engine) as s:
        return s.exec(select(model)).all()


# ─── Clock-in ─────────────────────────────────────────────────────────────────

class TestClockIn:
    def test_synced_clock_in_near_site(self, attendance, registry, clock, icu_site, engine):
        registry.register("c1", user_id="student-1", now=clock())
        client_time = clock() - timedelta(milliseconds=40)

        result = attendance.clock_in(
            "student-1",
            "icu-2026",
            location=_meters_north(30, accuracy=10.0),
            client_id="c1",
            client_time=client_time,
        )

        assert result.is_clocked
        assert result.verification_status == VERIFIED
        assert result.verification.distance_meters == pytest.approx(30, abs=1)
        assert result.sync_data.drift_ms == 40
        assert result.sync_data.sync_accuracy == ACCURACY_HIGH
        assert result.sync_data.client_id == "c1"
        assert result.clock_in_time == clock()

        record = _records(engine)[0]
        assert record.status == RECORD_OPEN
        assert record.site_radius_m == 100.0
        assert record.clock_in_accuracy_m == 10.0

        annotation = _rows(engine, SynchronizedClockRecord)[0]
        assert annotation.time_record_id == result.record_id
        assert annotation.clock_in_drift_ms == 40
        assert annotation.sync_accuracy == ACCURACY_HIGH

        events = [e for e in _rows(engine, SyncEvent) if e.event_type == EVENT_SYNCED_CLOCK_IN]
        assert len(events) == 1
        assert json.loads(events[0].metadata_json)["timeRecordId"] == result.record_id

    def test_unsynchronized_clock_in(self, attendance, clock, engine):
        result = attendance.clock_in("student-1", "icu-2026")
        assert result.sync_data is None
        assert result.verification is None
        assert result.verification_status == UNVERIFIED
        assert result.clock_in_time == clock()
        assert _rows(engine, SynchronizedClockRecord) == []
        assert _rows(engine, SyncEvent) == []
        assert _records(engine)[0].clock_in_latitude is None

    def test_synced_timestamp_takes_precedence(self, attendance, clock):
        synced = clock() - timedelta(seconds=3)
        client = clock() - timedelta(seconds=10)
        result = attendance.clock_in(
            "student-1", "icu-2026", timestamp=client.isoformat(), synced_timestamp=synced.isoformat()
        )
        assert result.clock_in_time == synced

    def test_client_timestamp_used_without_sync(self, attendance, clock):
        client = clock() - timedelta(seconds=10)
        result = attendance.clock_in("student-1", "icu-2026", timestamp=client.isoformat())
        assert result.clock_in_time == client

    def test_future_timestamp_rejected(self, attendance, clock, engine):
        ahead = clock() + timedelta(minutes=10)
        with pytest.raises(InvalidTimestamp):
            attendance.clock_in("student-1", "icu-2026", timestamp=ahead.isoformat())
        assert _records(engine) == []

    def test_stale_timestamp_rejected(self, attendance, clock, engine):
        yesterday = clock() - timedelta(days=1)
        with pytest.raises(InvalidTimestamp) as exc_info:
            attendance.clock_in("student-1", "icu-2026", timestamp=yesterday.isoformat())
        assert exc_info.value.context["field"] == "timestamp"
        assert _records(engine) == []

    def test_recent_past_timestamp_accepted(self, attendance, clock):
        recent = clock() - timedelta(minutes=4)
        result = attendance.clock_in("student-1", "icu-2026", timestamp=recent.isoformat())
        assert result.clock_in_time == recent

    def test_offset_timestamp_normalized_to_utc(self, attendance, clock):
        eastern = timezone(timedelta(hours=-5))
        result = attendance.clock_in("student-1", "icu-2026", timestamp=clock().astimezone(eastern).isoformat())
        assert result.clock_in_time == clock()
        assert result.clock_in_time.utcoffset() == timedelta(0)

    def test_malformed_timestamp_rejected(self, attendance):
        with pytest.raises(InvalidTimestamp):
            attendance.clock_in("student-1", "icu-2026", timestamp="monday morning")

    def test_double_clock_in(self, attendance, engine):
        first = attendance.clock_in("student-1", "icu-2026")
        with pytest.raises(AlreadyClockedIn) as exc_info:
            attendance.clock_in("student-1", "icu-2026")
        assert exc_info.value.record_id == first.record_id
        open_rows = [r for r in _records(engine) if r.status == RECORD_OPEN]
        assert len(open_rows) == 1

    def test_race_resolved_by_unique_index(self, attendance, engine):
        """A request that passed the open-record check still loses at insert time."""
        winner = attendance.clock_in("student-1", "icu-2026")

        real_find = attendance._find_open_record
        calls = {"n": 0}

        def stale_check(user_id, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                return None  # the racing request saw no open record
            return real_find(user_id, **kwargs)

        with patch.object(attendance, "_find_open_record", side_effect=stale_check):
            with pytest.raises(AlreadyClockedIn) as exc_info:
                attendance.clock_in("student-1", "icu-2026")

        assert exc_info.value.record_id == winner.record_id
        assert len(_records(engine)) == 1

    def test_outside_site_still_clocks_in_flagged(self, attendance, icu_site):
        result = attendance.clock_in("student-1", "icu-2026", location=_meters_north(5000))
        assert result.is_clocked
        assert result.verification_status == FLAGGED
        assert not result.verification.is_valid

    def test_rotation_without_site_is_unverified(self, attendance):
        result = attendance.clock_in("student-1", "home-visits", location=_at_site())
        assert result.verification.skipped
        assert result.verification_status == UNVERIFIED

    def test_invalid_coordinates_rejected(self, attendance, icu_site, engine):
        bad = LocationSample(latitude=123.0, longitude=SITE_LNG, accuracy_m=5.0)
        with pytest.raises(InvalidCoordinates):
            attendance.clock_in("student-1", "icu-2026", location=bad)
        assert _records(engine) == []

    def test_unknown_session_proceeds_unsynchronized(self, attendance, clock):
        result = attendance.clock_in(
            "student-1", "icu-2026", client_id="never-registered", client_time=clock()
        )
        assert result.is_clocked
        assert result.sync_data is None

    def test_expired_session_proceeds_unsynchronized(self, attendance, registry, clock):
        registry.register("c1", now=clock())
        clock.advance(hours=30)
        result = attendance.clock_in("student-1", "icu-2026", client_id="c1", client_time=clock())
        assert result.is_clocked
        assert result.sync_data is None

    def test_reported_drift_used_without_client_time(self, attendance, registry, clock):
        registry.register("c1", now=clock())
        result = attendance.clock_in("student-1", "icu-2026", client_id="c1", drift_ms=-750)
        assert result.sync_data.drift_ms == -750
        assert result.sync_data.sync_accuracy == ACCURACY_LOW

    def test_sync_annotation_failure_keeps_clock_in(self, attendance, registry, clock, engine):
        registry.register("c1", now=clock())
        with patch.object(registry, "append_event", side_effect=RuntimeError("disk full")), \
             patch("attendsync.attendance.service.SynchronizedClockRecord", side_effect=RuntimeError("boom")):
            result = attendance.clock_in("student-1", "icu-2026", client_id="c1", client_time=clock())

        assert result.is_clocked
        assert result.sync_data is None
        assert len(_records(engine)) == 1

    def test_synced_clock_in_adds_one_drift_sample(self, attendance, registry, estimator, clock):
        registry.register("c1", now=clock())
        attendance.clock_in("student-1", "icu-2026", client_id="c1", client_time=clock())
        assert estimator.stats("c1").count == 1

    def test_losing_clock_in_adds_no_drift_sample(self, attendance, registry, estimator, clock):
        registry.register("c1", now=clock())
        attendance.clock_in("student-1", "icu-2026", client_id="c1", client_time=clock())

        with patch.object(attendance, "_find_open_record", return_value=None):
            with pytest.raises(AlreadyClockedIn):
                attendance.clock_in(
                    "student-1", "icu-2026", client_id="c1", client_time=clock() - timedelta(seconds=2)
                )
        assert estimator.stats("c1").count == 1

    def test_rejected_clock_in_adds_no_drift_sample(self, attendance, registry, estimator, clock, icu_site):
        registry.register("c1", now=clock())
        bad = LocationSample(latitude=123.0, longitude=SITE_LNG, accuracy_m=5.0)
        with pytest.raises(InvalidCoordinates):
            attendance.clock_in("student-1", "icu-2026", location=bad, client_id="c1", client_time=clock())
        assert estimator.stats("c1") is None

    def test_failed_insert_adds_no_drift_sample(self, attendance, registry, estimator, clock):
        registry.register("c1", now=clock())
        with patch.object(attendance, "_insert_open_record", side_effect=PersistenceFailure("Could not record clock-in")):
            with pytest.raises(PersistenceFailure):
                attendance.clock_in("student-1", "icu-2026", client_id="c1", client_time=clock())
        assert estimator.stats("c1") is None


# ─── Clock-out ────────────────────────────────────────────────────────────────

class TestClockOut:
    def test_full_shift(self, attendance, clock, icu_site, engine):
        attendance.clock_in("student-1", "icu-2026", location=_at_site())
        clock.advance(hours=8, minutes=30, seconds=15)

        result = attendance.clock_out("student-1", location=_at_site())

        assert result.total_hours == "08:30:15"
        assert result.duration_seconds == 8 * 3600 + 30 * 60 + 15
        assert result.verification_status == VERIFIED
        record = _records(engine)[0]
        assert record.status == RECORD_CLOSED
        assert record.clock_out_time == clock()

    def test_not_clocked_in(self, attendance):
        with pytest.raises(NotClockedIn):
            attendance.clock_out("student-1")

    def test_wrong_record_id(self, attendance):
        opened = attendance.clock_in("student-1", "icu-2026")
        with pytest.raises(NotClockedIn):
            attendance.clock_out("student-1", time_record_id=opened.record_id + 99)

    def test_other_users_record_not_closable(self, attendance):
        opened = attendance.clock_in("student-1", "icu-2026")
        with pytest.raises(NotClockedIn):
            attendance.clock_out("student-2", time_record_id=opened.record_id)

    def test_clock_out_before_clock_in_writes_nothing(self, attendance, clock, engine):
        attendance.clock_in("student-1", "icu-2026", timestamp=(clock() - timedelta(minutes=1)).isoformat())
        earlier = clock() - timedelta(minutes=2)
        with pytest.raises(InvalidDuration):
            attendance.clock_out("student-1", timestamp=earlier.isoformat())
        record = _records(engine)[0]
        assert record.status == RECORD_OPEN
        assert record.clock_out_time is None

    def test_rejected_clock_out_adds_no_drift_sample(self, attendance, registry, estimator, clock):
        registry.register("c1", now=clock())
        attendance.clock_in("student-1", "icu-2026", timestamp=(clock() - timedelta(minutes=1)).isoformat())
        earlier = clock() - timedelta(minutes=2)
        with pytest.raises(InvalidDuration):
            attendance.clock_out("student-1", timestamp=earlier.isoformat(), client_id="c1", client_time=clock())
        assert estimator.stats("c1") is None

        clock.advance(hours=1)
        attendance.clock_out("student-1", client_id="c1", client_time=clock())
        assert estimator.stats("c1").count == 1

    def test_zero_duration_allowed(self, attendance):
        attendance.clock_in("student-1", "icu-2026")
        result = attendance.clock_out("student-1")
        assert result.total_hours == "00:00:00"

    def test_double_clock_out(self, attendance, clock):
        attendance.clock_in("student-1", "icu-2026")
        clock.advance(hours=1)
        attendance.clock_out("student-1")
        with pytest.raises(NotClockedIn):
            attendance.clock_out("student-1")

    def test_concurrent_close_has_one_winner(self, attendance, clock):
        opened = attendance.clock_in("student-1", "icu-2026")
        clock.advance(hours=1)
        stale = attendance._find_open_record("student-1")
        attendance.clock_out("student-1")

        # The second request read the record before the first one closed it
        with patch.object(attendance, "_find_open_record", return_value=stale):
            with pytest.raises(NotClockedIn):
                attendance.clock_out("student-1", time_record_id=opened.record_id)

    def test_outside_site_is_flagged_but_closed(self, attendance, clock, icu_site, engine):
        attendance.clock_in("student-1", "icu-2026", location=_at_site())
        clock.advance(hours=4)
        result = attendance.clock_out("student-1", location=_meters_north(5000))
        assert result.verification_status == FLAGGED
        assert result.verification.distance_meters == pytest.approx(5000, abs=1)
        assert _records(engine)[0].status == RECORD_CLOSED

    def test_strict_mode_requires_override(self, engine, registry, estimator, clock, icu_site):
        strict = AttendanceService(
            engine,
            registry=registry,
            estimator=estimator,
            verifier=LocationVerifier(),
            sites=DatabaseSiteLookup(engine),
            require_location_override=True,
            clock=clock,
        )
        strict.clock_in("student-1", "icu-2026", location=_at_site())
        clock.advance(hours=2)

        with pytest.raises(LocationOverrideRequired) as exc_info:
            strict.clock_out("student-1", location=_meters_north(5000))
        assert not exc_info.value.verification.is_valid
        assert _records(engine)[0].status == RECORD_OPEN

        result = strict.clock_out("student-1", location=_meters_north(5000), confirm_override=True)
        assert result.verification_status == FLAGGED

    def test_site_snapshot_used_after_site_moves(self, attendance, clock, icu_site, test_session):
        attendance.clock_in("student-1", "icu-2026", location=_at_site())
        icu_site.latitude = SITE_LAT + 1.0
        test_session.add(icu_site)
        test_session.commit()

        clock.advance(hours=1)
        result = attendance.clock_out("student-1", location=_at_site())
        assert result.verification_status == VERIFIED

    def test_notes_appended(self, attendance, clock, engine):
        attendance.clock_in("student-1", "icu-2026", notes="Night shift")
        clock.advance(hours=1)
        attendance.clock_out("student-1", notes="Handover done")
        assert _records(engine)[0].notes == "Night shift\nHandover done"

    def test_synced_clock_out_updates_annotation(self, attendance, registry, clock, engine):
        registry.register("c1", now=clock())
        attendance.clock_in("student-1", "icu-2026", client_id="c1", client_time=clock())
        clock.advance(hours=6)
        result = attendance.clock_out(
            "student-1", client_id="c1", client_time=clock() - timedelta(milliseconds=150)
        )

        assert result.sync_data.drift_ms == 150
        annotations = _rows(engine, SynchronizedClockRecord)
        assert len(annotations) == 1
        assert annotations[0].synced_clock_out == clock()
        assert annotations[0].clock_out_drift_ms == 150
        events = [e.event_type for e in _rows(engine, SyncEvent)]
        assert events == [EVENT_SYNCED_CLOCK_IN, EVENT_SYNCED_CLOCK_OUT]

    def test_new_record_after_close(self, attendance, clock, engine):
        attendance.clock_in("student-1", "icu-2026")
        clock.advance(hours=1)
        attendance.clock_out("student-1")
        clock.advance(hours=12)
        attendance.clock_in("student-1", "icu-2026")
        statuses = sorted(r.status for r in _records(engine))
        assert statuses == [RECORD_CLOSED, RECORD_OPEN]


# ─── Queries ──────────────────────────────────────────────────────────────────

class TestQueries:
    def test_status_when_clocked_in(self, attendance, clock):
        opened = attendance.clock_in("student-1", "icu-2026")
        clock.advance(minutes=90)
        status = attendance.get_status("student-1")
        assert status.is_clocked
        assert status.record_id == opened.record_id
        assert status.current_duration_seconds == 90 * 60

    def test_status_when_not_clocked_in(self, attendance):
        assert not attendance.get_status("student-1").is_clocked

    def test_history_newest_first(self, attendance, clock):
        for _ in range(3):
            attendance.clock_in("student-1", "icu-2026")
            clock.advance(hours=1)
            attendance.clock_out("student-1")
            clock.advance(hours=23)
        attendance.clock_in("student-2", "icu-2026")

        history = attendance.history("student-1")
        assert len(history) == 3
        assert history[0].clock_in_time > history[-1].clock_in_time
        assert len(attendance.history("student-1", limit=2, offset=2)) == 1


class TestCombineVerification:
    def test_flagged_wins(self):
        assert combine_verification(VERIFIED, FLAGGED) == FLAGGED

    def test_verified_beats_unverified(self):
        assert combine_verification(UNVERIFIED, VERIFIED) == VERIFIED

    def test_nothing_checked(self):
        assert combine_verification(None, None) == UNVERIFIED
