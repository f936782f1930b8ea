"""Shared test fixtures."""
from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from attendsync.models.attendance import RotationSite, TimeRecord  # noqa: F401
from attendsync.models.sync import SyncEvent, SyncSession, SynchronizedClockRecord  # noqa: F401
from attendsync.attendance.service import AttendanceService
from attendsync.location.sites import DatabaseSiteLookup
from attendsync.location.verifier import LocationVerifier
from attendsync.timesync.drift import DriftEstimator
from attendsync.timesync.registry import SyncSessionRegistry

NOW = datetime(2026, 3, 2, 8, 0, 0, tzinfo=timezone.utc)

# General Hospital ICU
SITE_LAT = 40.7128
SITE_LNG = -74.0060


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="estimator")
def estimator_fixture() -> DriftEstimator:
    return DriftEstimator()


@pytest.fixture(name="registry")
def registry_fixture(engine) -> SyncSessionRegistry:
    return SyncSessionRegistry(engine, inactivity_window=timedelta(hours=24))


@pytest.fixture(name="icu_site")
def icu_site_fixture(test_session: Session) -> RotationSite:
    """A rotation with a fixed site and a 100 m geofence."""
    site = RotationSite(
        rotation_id="icu-2026",
        name="General Hospital ICU",
        latitude=SITE_LAT,
        longitude=SITE_LNG,
        radius_m=100.0,
    )
    test_session.add(site)
    test_session.commit()
    test_session.refresh(site)
    return site


@pytest.fixture(name="attendance")
def attendance_fixture(engine, registry, estimator, clock) -> AttendanceService:
    return AttendanceService(
        engine,
        registry=registry,
        estimator=estimator,
        verifier=LocationVerifier(accuracy_threshold_m=500.0),
        sites=DatabaseSiteLookup(engine, default_radius_m=100.0),
        clock=clock,
    )
