"""
Main entrypoint: serves the API and runs the session sweep in one process.

Usage:
    python -m attendsync init-db    # create tables and indexes, then exit
    python -m attendsync            # starts API + scheduler
    uvicorn attendsync.api.main:create_app --factory --port 8000  # API only
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_init_db() -> None:
    from attendsync.db.engine import get_engine

    get_engine()  # creates tables on first call
    logger.info("Database initialised.")


async def _run_server() -> None:
    import uvicorn

    from attendsync.api.main import create_app
    from attendsync.config import get_settings
    from attendsync.db.engine import get_engine
    from attendsync.scheduler.jobs import build_scheduler

    settings = get_settings()
    engine = get_engine()

    scheduler = build_scheduler(engine)
    scheduler.start()
    logger.info(
        "Scheduler started (session sweep every %d min)",
        settings.session_sweep_minutes,
    )

    server = uvicorn.Server(
        uvicorn.Config(create_app(engine=engine), host=settings.api_host, port=settings.api_port)
    )
    logger.info("Starting API on %s:%d", settings.api_host, settings.api_port)
    try:
        await server.serve()
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m attendsync init-db` or just `python -m attendsync`
    if len(sys.argv) > 1 and sys.argv[1] == "init-db":
        _run_init_db()
    else:
        asyncio.run(_run_server())
