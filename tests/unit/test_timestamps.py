"""Tests for timestamp parsing, resolution and duration formatting."""
from datetime import datetime, timedelta, timezone

import pytest

from attendsync.errors import InvalidTimestamp
from attendsync.timesync.timestamps import (
    format_duration,
    parse_timestamp,
    resolve_authoritative_timestamp,
    utcnow,
)

SERVER = datetime(2026, 3, 2, 8, 0, 0, tzinfo=timezone.utc)


class TestResolveAuthoritativeTimestamp:
    def test_synced_timestamp_wins(self):
        synced = SERVER - timedelta(seconds=2)
        client = SERVER - timedelta(seconds=5)
        assert resolve_authoritative_timestamp(synced, client, SERVER) == synced

    def test_client_timestamp_without_sync(self):
        client = SERVER - timedelta(seconds=5)
        assert resolve_authoritative_timestamp(None, client, SERVER) == client

    def test_server_time_when_nothing_supplied(self):
        assert resolve_authoritative_timestamp(None, None, SERVER) == SERVER


class TestParseTimestamp:
    def test_none_and_empty(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_iso_with_z_suffix(self):
        assert parse_timestamp("2026-03-02T08:00:00Z") == SERVER

    def test_iso_with_offset_converted_to_utc(self):
        assert parse_timestamp("2026-03-02T10:00:00+02:00") == SERVER

    def test_naive_iso_taken_as_utc(self):
        parsed = parse_timestamp("2026-03-02T08:00:00")
        assert parsed == SERVER
        assert parsed.tzinfo is not None

    def test_epoch_milliseconds(self):
        ms = int(SERVER.timestamp() * 1000)
        assert parse_timestamp(ms) == SERVER

    def test_aware_datetime_normalised(self):
        aware = datetime(2026, 3, 2, 3, 0, tzinfo=timezone(timedelta(hours=-5)))
        parsed = parse_timestamp(aware)
        assert parsed == SERVER
        assert parsed.utcoffset() == timedelta(0)

    @pytest.mark.parametrize("value", [
        "not-a-date",
        True,
        float("nan"),
        -1,
        [2026],
        "0001-01-01T00:00:00+05:00",
        "9999-12-31T23:59:59-05:00",
    ])
    def test_rejects_garbage(self, value):
        with pytest.raises(InvalidTimestamp):
            parse_timestamp(value)

    def test_rejects_pre_epoch(self):
        with pytest.raises(InvalidTimestamp):
            parse_timestamp("1969-12-31T23:59:59Z")

    def test_error_carries_field_name(self):
        with pytest.raises(InvalidTimestamp) as exc_info:
            parse_timestamp("garbage", field="clientTime")
        assert exc_info.value.context["field"] == "clientTime"
        assert exc_info.value.code == "INVALID_TIMESTAMP"


class TestFormatDuration:
    def test_zero(self):
        assert format_duration(0) == "00:00:00"

    def test_mixed(self):
        assert format_duration(3 * 3600 + 25 * 60 + 7) == "03:25:07"

    def test_fractional_seconds_truncated(self):
        assert format_duration(59.9) == "00:00:59"

    def test_hours_not_wrapped(self):
        assert format_duration(26 * 3600) == "26:00:00"


def test_utcnow_is_aware_utc():
    assert utcnow().utcoffset() == timedelta(0)
