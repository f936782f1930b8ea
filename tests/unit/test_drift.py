"""Tests for drift estimation, accuracy tiers and rolling statistics."""
import math
from datetime import datetime, timedelta, timezone

import pytest

from attendsync.errors import InvalidTimestamp
from attendsync.timesync.drift import (
    ACCURACY_HIGH,
    ACCURACY_LOW,
    ACCURACY_MEDIUM,
    TREND_DECREASING,
    TREND_INCREASING,
    TREND_STABLE,
    DriftEstimator,
    classify_accuracy,
    get_drift_estimator,
    reported_estimate,
)

SERVER = datetime(2026, 3, 2, 8, 0, 0, tzinfo=timezone.utc)


class TestClassifyAccuracy:
    @pytest.mark.parametrize("drift, expected", [
        (0, ACCURACY_HIGH),
        (99, ACCURACY_HIGH),
        (100, ACCURACY_MEDIUM),
        (499, ACCURACY_MEDIUM),
        (500, ACCURACY_LOW),
        (60_000, ACCURACY_LOW),
    ])
    def test_tier_boundaries(self, drift, expected):
        assert classify_accuracy(drift) == expected

    def test_uses_magnitude(self):
        assert classify_accuracy(-99) == ACCURACY_HIGH
        assert classify_accuracy(-250) == ACCURACY_MEDIUM
        assert classify_accuracy(-500) == ACCURACY_LOW


class TestEstimate:
    def test_client_behind_server_is_positive(self):
        estimator = DriftEstimator()
        client = SERVER - timedelta(milliseconds=40)
        estimate = estimator.estimate(client, SERVER, client_id="c1")
        assert estimate.drift_ms == 40
        assert estimate.accuracy == ACCURACY_HIGH
        assert estimate.measured

    def test_client_ahead_is_negative(self):
        estimator = DriftEstimator()
        client = SERVER + timedelta(milliseconds=250)
        estimate = estimator.estimate(client, SERVER, client_id="c1")
        assert estimate.drift_ms == -250
        assert estimate.accuracy == ACCURACY_MEDIUM

    def test_iso_string_client_time(self):
        estimator = DriftEstimator()
        estimate = estimator.estimate("2026-03-02T07:59:59Z", SERVER)
        assert estimate.drift_ms == 1000
        assert estimate.accuracy == ACCURACY_LOW

    def test_missing_client_time_is_zero_low(self):
        estimator = DriftEstimator()
        estimate = estimator.estimate(None, SERVER, client_id="c1")
        assert estimate.drift_ms == 0
        assert estimate.accuracy == ACCURACY_LOW
        assert not estimate.measured
        assert estimator.stats("c1") is None

    def test_malformed_client_time_raises_and_counts(self):
        estimator = DriftEstimator()
        with pytest.raises(InvalidTimestamp):
            estimator.estimate("yesterday-ish", SERVER, client_id="c1")
        assert estimator.error_count == 1
        assert estimator.total_samples == 0

    def test_no_client_id_records_nothing(self):
        estimator = DriftEstimator()
        estimator.estimate(SERVER, SERVER)
        assert estimator.snapshot() == {}

    def test_reported_drift_is_not_recorded(self):
        estimate = reported_estimate(-120)
        assert estimate.drift_ms == -120
        assert estimate.accuracy == ACCURACY_MEDIUM
        assert estimate.measured

    def test_record_estimate_adds_sample_and_trend(self):
        estimator = DriftEstimator()
        for drift in (10, 12, 11):
            estimator.record("c1", drift, at=SERVER)
        recorded = estimator.record_estimate("c1", reported_estimate(400), at=SERVER)
        assert recorded.trend == TREND_INCREASING
        assert estimator.stats("c1").count == 4

    def test_record_estimate_skips_unmeasured(self):
        estimator = DriftEstimator()
        unmeasured = estimator.estimate(None, SERVER)
        assert estimator.record_estimate("c1", unmeasured, at=SERVER) is unmeasured
        assert estimator.stats("c1") is None


class TestRollingStats:
    def test_mean_and_sample_std_dev(self):
        estimator = DriftEstimator()
        for drift in (10, -20, 30, 40):
            estimator.record("c1", drift, at=SERVER)
        stats = estimator.stats("c1")
        # statistics over |drift|: 10, 20, 30, 40
        assert stats.count == 4
        assert stats.average_drift_ms == pytest.approx(25.0)
        assert stats.std_dev_ms == pytest.approx(math.sqrt(500 / 3))
        assert stats.max_drift_ms == 40
        assert stats.last_drift_ms == 40

    def test_single_sample_has_zero_std_dev(self):
        estimator = DriftEstimator()
        estimator.record("c1", 75, at=SERVER)
        assert estimator.stats("c1").std_dev_ms == 0.0

    def test_clients_tracked_separately(self):
        estimator = DriftEstimator()
        estimator.record("a", 10, at=SERVER)
        estimator.record("b", 900, at=SERVER)
        snapshot = estimator.snapshot()
        assert snapshot["a"].average_drift_ms == 10
        assert snapshot["b"].average_drift_ms == 900
        assert estimator.total_samples == 2


class TestTrend:
    def test_stable_with_fewer_than_two_prior_samples(self):
        estimator = DriftEstimator()
        assert estimator.record("c1", 10, at=SERVER) == TREND_STABLE
        assert estimator.record("c1", 5000, at=SERVER) == TREND_STABLE

    def test_increasing(self):
        estimator = DriftEstimator()
        for drift in (10, 12, 11):
            estimator.record("c1", drift, at=SERVER)
        assert estimator.record("c1", 400, at=SERVER) == TREND_INCREASING
        assert estimator.stats("c1").trend == TREND_INCREASING

    def test_decreasing(self):
        estimator = DriftEstimator()
        for drift in (400, 410, 405):
            estimator.record("c1", drift, at=SERVER)
        assert estimator.record("c1", 5, at=SERVER) == TREND_DECREASING

    def test_within_one_std_dev_is_stable(self):
        estimator = DriftEstimator()
        for drift in (100, 120, 110):
            estimator.record("c1", drift, at=SERVER)
        assert estimator.record("c1", 115, at=SERVER) == TREND_STABLE


def test_get_drift_estimator_is_singleton():
    assert get_drift_estimator() is get_drift_estimator()
