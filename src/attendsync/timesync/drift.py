"""
Per-client clock drift estimation.

Drift is ``server_time - client_time`` in milliseconds, measured at the moment
a request is received. No round-trip compensation is attempted; the result is
only trusted to the resolution of the accuracy tiers:

    |drift| <  100 ms  → high
    |drift| <  500 ms  → medium
    |drift| >= 500 ms  → low

Rolling statistics of |drift| are kept per client with Welford's online
update, so memory is O(1) per client no matter how many samples arrive.
The statistics live in this process only and are lost on restart; they feed
monitoring, never an attendance decision.
"""
import math
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Optional

from attendsync.errors import InvalidTimestamp
from attendsync.timesync.timestamps import TimestampInput, parse_timestamp, utcnow

HIGH_ACCURACY_MAX_MS = 100
MEDIUM_ACCURACY_MAX_MS = 500

ACCURACY_HIGH = "high"
ACCURACY_MEDIUM = "medium"
ACCURACY_LOW = "low"

TREND_INCREASING = "increasing"
TREND_DECREASING = "decreasing"
TREND_STABLE = "stable"


def classify_accuracy(drift_ms: float) -> str:
    """Map a signed drift onto its accuracy tier."""
    magnitude = abs(drift_ms)
    if magnitude < HIGH_ACCURACY_MAX_MS:
        return ACCURACY_HIGH
    if magnitude < MEDIUM_ACCURACY_MAX_MS:
        return ACCURACY_MEDIUM
    return ACCURACY_LOW


@dataclass(frozen=True)
class DriftEstimate:
    drift_ms: int  # signed
    accuracy: str
    trend: str = TREND_STABLE
    measured: bool = True  # False when no client time was supplied


@dataclass(frozen=True)
class DriftSample:
    """Read-only snapshot of one client's rolling statistics."""

    client_id: str
    count: int
    average_drift_ms: float
    std_dev_ms: float
    max_drift_ms: int
    last_drift_ms: int
    trend: str
    last_sample_at: Optional[datetime]


class _RollingStats:
    """Welford accumulator over |drift|. Callers hold ``lock`` while mutating."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.count = 0
        self.mean = 0.0
        self.m2 = 0.0
        self.max_drift_ms = 0
        self.last_drift_ms = 0
        self.trend = TREND_STABLE
        self.last_sample_at: Optional[datetime] = None

    @property
    def std_dev(self) -> float:
        if self.count < 2:
            return 0.0
        return math.sqrt(self.m2 / (self.count - 1))

    def add(self, drift_ms: int, at: datetime) -> str:
        magnitude = abs(drift_ms)

        # Trend is judged against the history before this sample is folded in.
        if self.count < 2:
            trend = TREND_STABLE
        elif magnitude - self.mean > self.std_dev:
            trend = TREND_INCREASING
        elif self.mean - magnitude > self.std_dev:
            trend = TREND_DECREASING
        else:
            trend = TREND_STABLE

        self.count += 1
        delta = magnitude - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (magnitude - self.mean)

        self.max_drift_ms = max(self.max_drift_ms, magnitude)
        self.last_drift_ms = drift_ms
        self.trend = trend
        self.last_sample_at = at
        return trend

    def snapshot(self, client_id: str) -> DriftSample:
        return DriftSample(
            client_id=client_id,
            count=self.count,
            average_drift_ms=self.mean,
            std_dev_ms=self.std_dev,
            max_drift_ms=self.max_drift_ms,
            last_drift_ms=self.last_drift_ms,
            trend=self.trend,
            last_sample_at=self.last_sample_at,
        )


class DriftEstimator:
    """
    Computes drift for a request and keeps rolling per-client statistics.

    Thread-safe: the client map is guarded by one lock, each client's
    accumulator by its own, so unrelated clients never contend.
    """

    def __init__(self) -> None:
        self._stats: Dict[str, _RollingStats] = {}
        self._map_lock = threading.Lock()
        self._counter_lock = threading.Lock()
        self.started_at = utcnow()
        self.error_count = 0

    def estimate(
        self,
        client_time: TimestampInput,
        server_time: datetime,
        *,
        client_id: Optional[str] = None,
    ) -> DriftEstimate:
        """
        Drift for one request.

        A missing client time is not an error: the estimate is drift 0 with
        low accuracy and nothing is recorded. Malformed client times raise
        InvalidTimestamp and are counted as errors.
        """
        try:
            parsed = parse_timestamp(client_time, field="clientTime")
        except InvalidTimestamp:
            self.record_error()
            raise

        if parsed is None:
            return DriftEstimate(drift_ms=0, accuracy=ACCURACY_LOW, measured=False)

        drift_ms = int(round((server_time - parsed).total_seconds() * 1000))
        trend = TREND_STABLE
        if client_id:
            trend = self.record(client_id, drift_ms, at=server_time)
        return DriftEstimate(drift_ms=drift_ms, accuracy=classify_accuracy(drift_ms), trend=trend)

    def record_estimate(self, client_id: str, estimate: DriftEstimate, *, at: Optional[datetime] = None) -> DriftEstimate:
        """
        Fold an estimate made without a client id into the client's statistics.

        Unmeasured estimates are returned unchanged; otherwise the result
        carries the trend computed against the client's history.
        """
        if not estimate.measured:
            return estimate
        trend = self.record(client_id, estimate.drift_ms, at=at)
        return replace(estimate, trend=trend)

    def record(self, client_id: str, drift_ms: int, *, at: Optional[datetime] = None) -> str:
        """Fold one sample into the client's statistics and return its trend."""
        stats = self._stats_for(client_id)
        with stats.lock:
            return stats.add(drift_ms, at or utcnow())

    def record_error(self) -> None:
        with self._counter_lock:
            self.error_count += 1

    def stats(self, client_id: str) -> Optional[DriftSample]:
        stats = self._stats.get(client_id)
        if stats is None:
            return None
        with stats.lock:
            return stats.snapshot(client_id)

    def snapshot(self) -> Dict[str, DriftSample]:
        with self._map_lock:
            items = list(self._stats.items())
        result = {}
        for client_id, stats in items:
            with stats.lock:
                result[client_id] = stats.snapshot(client_id)
        return result

    @property
    def total_samples(self) -> int:
        return sum(sample.count for sample in self.snapshot().values())

    def _stats_for(self, client_id: str) -> _RollingStats:
        with self._map_lock:
            stats = self._stats.get(client_id)
            if stats is None:
                stats = _RollingStats()
                self._stats[client_id] = stats
            return stats


def reported_estimate(drift_ms: int) -> DriftEstimate:
    """Estimate from a drift the client computed itself (used when no client time is sent)."""
    drift_ms = int(drift_ms)
    return DriftEstimate(drift_ms=drift_ms, accuracy=classify_accuracy(drift_ms))


_estimator: Optional[DriftEstimator] = None


def get_drift_estimator() -> DriftEstimator:
    """Process-wide estimator, created on first call."""
    global _estimator
    if _estimator is None:
        _estimator = DriftEstimator()
    return _estimator
