"""SQLModel engine singleton and table creation."""
from sqlmodel import SQLModel, create_engine

from attendsync.config import get_settings

_engine = None


def create_db_and_tables(engine) -> None:
    """Create all tables and indexes (idempotent)."""
    # Import all models so metadata is populated before create_all
    from attendsync.models.attendance import RotationSite, TimeRecord  # noqa
    from attendsync.models.sync import SyncEvent, SyncSession, SynchronizedClockRecord  # noqa
    SQLModel.metadata.create_all(engine)


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False  # FastAPI runs sync routes in a threadpool
        _engine = create_engine(settings.database_url, connect_args=connect_args)
        create_db_and_tables(_engine)
    return _engine
