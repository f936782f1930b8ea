"""
Location verification: is a captured coordinate close enough to the site?

Distance is great-circle (haversine on a sphere of radius 6,371,000 m).
The verdict is a value, never an exception: "too far" and "too imprecise"
come back as errors/warnings on the result. Only structurally invalid input
(non-numeric or out-of-range coordinates) raises InvalidCoordinates.

Decision order:
  1. No site coordinate → valid, distance None, nothing else checked.
  2. accuracy > threshold → warning only.
  3. distance > geofence radius → invalid, with an error.
  4. Otherwise valid.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from attendsync.errors import InvalidCoordinates

EARTH_RADIUS_M = 6_371_000.0

LOW_ACCURACY_WARNING = "Low GPS accuracy"
OUTSIDE_RADIUS_ERROR = "Outside approved site radius"


@dataclass(frozen=True)
class LocationSample:
    latitude: float
    longitude: float
    accuracy_m: float
    source: str = "gps"
    captured_at: Optional[datetime] = None


@dataclass(frozen=True)
class SiteGeofence:
    latitude: float
    longitude: float
    radius_m: float
    name: str = ""


@dataclass
class LocationVerificationResult:
    is_valid: bool
    distance_meters: Optional[float] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    skipped: bool = False  # no site to verify against


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two WGS84 points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (math.sin(delta_phi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def validate_sample(sample: LocationSample) -> None:
    """Raise InvalidCoordinates unless lat/lng/accuracy are finite numbers in range."""
    for name, value in (
        ("latitude", sample.latitude),
        ("longitude", sample.longitude),
        ("accuracy", sample.accuracy_m),
    ):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidCoordinates(f"{name} must be numeric, got {value!r}", field=name)
        if not math.isfinite(value):
            raise InvalidCoordinates(f"{name} must be finite, got {value!r}", field=name)

    if not -90.0 <= sample.latitude <= 90.0:
        raise InvalidCoordinates(f"latitude {sample.latitude} outside [-90, 90]", field="latitude")
    if not -180.0 <= sample.longitude <= 180.0:
        raise InvalidCoordinates(f"longitude {sample.longitude} outside [-180, 180]", field="longitude")
    if sample.accuracy_m < 0:
        raise InvalidCoordinates(f"accuracy {sample.accuracy_m} is negative", field="accuracy")


class LocationVerifier:
    def __init__(self, *, accuracy_threshold_m: float = 500.0):
        self.accuracy_threshold_m = accuracy_threshold_m

    def verify(self, sample: LocationSample, site: Optional[SiteGeofence]) -> LocationVerificationResult:
        validate_sample(sample)

        if site is None:
            return LocationVerificationResult(is_valid=True, skipped=True)

        result = LocationVerificationResult(is_valid=True)
        result.distance_meters = haversine_distance(
            sample.latitude, sample.longitude, site.latitude, site.longitude
        )

        if sample.accuracy_m > self.accuracy_threshold_m:
            result.warnings.append(
                f"{LOW_ACCURACY_WARNING} (±{sample.accuracy_m:.0f}m, "
                f"threshold ±{self.accuracy_threshold_m:.0f}m)"
            )

        if result.distance_meters > site.radius_m:
            result.is_valid = False
            where = f" of {site.name}" if site.name else ""
            result.errors.append(
                f"{OUTSIDE_RADIUS_ERROR}{where} "
                f"(distance: {result.distance_meters:.0f}m, allowed: {site.radius_m:.0f}m)"
            )

        return result
