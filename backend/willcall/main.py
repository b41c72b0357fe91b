import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from willcall.config import get_settings
from willcall.worker import worker_loop

settings = get_settings()
logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Background task health tracking, updated by each worker tick
_background_health: dict[str, float] = {}

# A tick older than this many intervals counts as stale
STALE_INTERVALS = 5


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the notification worker on startup, stop it on shutdown."""
    worker_task = asyncio.create_task(worker_loop(health=_background_health))
    logger.info("Application startup complete")
    yield

    logger.info("Shutting down, cancelling notification worker...")
    worker_task.cancel()
    try:
        await worker_task
    except asyncio.CancelledError:
        logger.info("worker_loop: stopped")

    try:
        from willcall.database import engine
        await engine.dispose()
        logger.info("Database connection pool disposed")
    except Exception as exc:
        logger.warning("Error disposing database engine: %s", exc)

    logger.info("Shutdown complete")


app = FastAPI(
    title="Will Call Notifications",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)


@app.get("/health")
async def health_check():
    """Database connectivity plus freshness of the last successful worker tick.

    Returns HTTP 503 when the database is unreachable.
    """
    from sqlalchemy import text
    from willcall.database import AsyncSessionLocal

    db_ok = False
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
            db_ok = True
    except Exception as e:
        logger.warning("health_check: database connection failed: %s", e)

    if not db_ok:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "database": "unavailable"},
        )

    worker_status = "unknown"
    last_ok = _background_health.get("worker_last_ok")
    if last_ok:
        age = time.time() - last_ok
        limit = settings.worker_interval_seconds * STALE_INTERVALS
        worker_status = "ok" if age < limit else f"stale ({int(age)}s ago)"

    return {
        "status": "healthy",
        "database": "connected",
        "background_tasks": {"notification_worker": worker_status},
    }
