"""
Sync quality reporting.

Read-only: aggregates the drift estimator's in-process statistics and the
session registry's counts into one status report with a 0-100 quality score
and plain-language recommendations.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from attendsync.models.sync import SESSION_ACTIVE, SESSION_EXPIRED
from attendsync.timesync.drift import ACCURACY_HIGH, ACCURACY_LOW, ACCURACY_MEDIUM, DriftEstimator, classify_accuracy
from attendsync.timesync.registry import SyncSessionRegistry
from attendsync.timesync.timestamps import utcnow

HIGH_ERROR_COUNT = 10
POOR_CONNECTION_HEALTH = 70
HIGH_DRIFT_MS = 1000


@dataclass
class SyncStatusReport:
    server_time: datetime
    is_connected: bool
    accuracy: str
    average_drift_ms: float
    max_drift_ms: int
    connection_health: float  # 0-100
    quality_score: int  # 0-100
    uptime_seconds: float
    sync_count: int
    error_count: int
    active_sessions: int
    expired_sessions: int
    last_sync_time: Optional[datetime]
    recommendations: List[str] = field(default_factory=list)


def calculate_quality_score(
    is_connected: bool, accuracy: str, drift_ms: float, connection_health: float
) -> int:
    """
    Weighted score:
      connection 40, accuracy 30/20/10, drift band 20/15/10/5, health 10/7/5/3.
    """
    score = 0
    if is_connected:
        score += 40

    score += {ACCURACY_HIGH: 30, ACCURACY_MEDIUM: 20, ACCURACY_LOW: 10}.get(accuracy, 0)

    if drift_ms < 100:
        score += 20
    elif drift_ms < 500:
        score += 15
    elif drift_ms < 1000:
        score += 10
    elif drift_ms < 5000:
        score += 5

    if connection_health > 90:
        score += 10
    elif connection_health > 70:
        score += 7
    elif connection_health > 50:
        score += 5
    elif connection_health > 30:
        score += 3

    return min(100, max(0, score))


def generate_recommendations(
    is_connected: bool,
    accuracy: str,
    drift_ms: float,
    connection_health: float,
    error_count: int,
) -> List[str]:
    recommendations = []
    if not is_connected:
        recommendations.append("Check network connectivity and firewall settings")
        recommendations.append("Verify time synchronization service is running")
    if accuracy == ACCURACY_LOW:
        recommendations.append("Consider switching to a more reliable time source")
        recommendations.append("Check for network latency issues")
    if drift_ms > HIGH_DRIFT_MS:
        recommendations.append("High time drift detected - consider manual time correction")
        recommendations.append("Check system clock configuration")
    if connection_health < POOR_CONNECTION_HEALTH:
        recommendations.append("Poor connection health - check network stability")
        recommendations.append("Consider using alternative synchronization protocol")
    if error_count > HIGH_ERROR_COUNT:
        recommendations.append("High error count detected - check service logs")
        recommendations.append("Consider restarting time synchronization service")
    if not recommendations:
        recommendations.append("Time synchronization is operating optimally")
    return recommendations


class SyncMonitor:
    def __init__(self, estimator: DriftEstimator, registry: SyncSessionRegistry, *, clock=utcnow):
        self.estimator = estimator
        self.registry = registry
        self._clock = clock

    def status(self) -> SyncStatusReport:
        now = self._clock()
        samples = list(self.estimator.snapshot().values())
        sync_count = sum(s.count for s in samples)

        if sync_count:
            average_drift = sum(s.average_drift_ms * s.count for s in samples) / sync_count
            max_drift = max(s.max_drift_ms for s in samples)
            accuracy = classify_accuracy(average_drift)
        else:
            average_drift = 0.0
            max_drift = 0
            accuracy = ACCURACY_LOW

        counts = self.registry.counts(now=now)
        is_connected = counts[SESSION_ACTIVE] > 0
        connection_health = max(0.0, 100.0 - average_drift / 10) if is_connected else 0.0
        error_count = self.estimator.error_count

        return SyncStatusReport(
            server_time=now,
            is_connected=is_connected,
            accuracy=accuracy,
            average_drift_ms=average_drift,
            max_drift_ms=max_drift,
            connection_health=connection_health,
            quality_score=calculate_quality_score(is_connected, accuracy, average_drift, connection_health),
            uptime_seconds=max(0.0, (now - self.estimator.started_at).total_seconds()),
            sync_count=sync_count,
            error_count=error_count,
            active_sessions=counts[SESSION_ACTIVE],
            expired_sessions=counts[SESSION_EXPIRED],
            last_sync_time=self.registry.last_seen(),
            recommendations=generate_recommendations(
                is_connected, accuracy, average_drift, connection_health, error_count
            ),
        )
