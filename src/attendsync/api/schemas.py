"""Request/response shapes shared across routers. JSON uses camelCase."""
from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from attendsync.attendance.service import SyncData
from attendsync.location.verifier import LocationSample, LocationVerificationResult
from attendsync.timesync.timestamps import parse_timestamp

# ISO-8601 string or epoch milliseconds; parsed by the services
TimestampValue = Optional[Union[int, float, str]]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class LocationIn(CamelModel):
    latitude: float = Field(ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(ge=-180, le=180, allow_inf_nan=False)
    accuracy: float = Field(ge=0, allow_inf_nan=False)  # meters
    source: str = "gps"
    captured_at: Optional[datetime] = None

    def to_sample(self) -> LocationSample:
        return LocationSample(
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy_m=self.accuracy,
            source=self.source,
            captured_at=parse_timestamp(self.captured_at, field="capturedAt"),
        )


class VerificationOut(CamelModel):
    is_valid: bool
    distance_meters: Optional[float] = None
    errors: List[str] = []
    warnings: List[str] = []
    skipped: bool = False

    @classmethod
    def from_result(cls, result: Optional[LocationVerificationResult]) -> Optional["VerificationOut"]:
        if result is None:
            return None
        return cls(
            is_valid=result.is_valid,
            distance_meters=result.distance_meters,
            errors=list(result.errors),
            warnings=list(result.warnings),
            skipped=result.skipped,
        )


class SyncDataOut(CamelModel):
    client_id: str
    server_time: datetime
    corrected_timestamp: datetime
    drift_ms: int
    sync_accuracy: str
    trend: str
    session_active: bool = True

    @classmethod
    def from_sync_data(cls, data: Optional[SyncData]) -> Optional["SyncDataOut"]:
        if data is None:
            return None
        return cls(
            client_id=data.client_id,
            server_time=data.server_time,
            corrected_timestamp=data.corrected_timestamp,
            drift_ms=data.drift_ms,
            sync_accuracy=data.sync_accuracy,
            trend=data.trend,
            session_active=data.session_active,
        )
