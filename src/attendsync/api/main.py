"""FastAPI application factory."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from attendsync.api.routes import clock, location, time_sync
from attendsync.db.engine import create_db_and_tables, get_engine
from attendsync.timesync.drift import DriftEstimator, get_drift_estimator


def create_app(engine=None, estimator: Optional[DriftEstimator] = None) -> FastAPI:
    """
    Build and return the FastAPI app.

    Tests pass their own in-memory engine and a fresh estimator; otherwise the
    process-wide singletons are used.

        uvicorn attendsync.api.main:create_app --factory --port 8000
    """
    engine = engine if engine is not None else get_engine()
    estimator = estimator if estimator is not None else get_drift_estimator()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        create_db_and_tables(engine)
        yield

    app = FastAPI(
        title="AttendSync API",
        description="Clinical rotation attendance with synchronized time",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.estimator = estimator

    app.include_router(clock.router, prefix="/clock", tags=["clock"])
    app.include_router(time_sync.router, prefix="/time-sync", tags=["time-sync"])
    app.include_router(location.router, prefix="/location", tags=["location"])

    return app
