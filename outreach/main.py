"""
FastAPI app for the scheduler-facing surface: health checks and /cron jobs.

    uvicorn outreach.main:app
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from outreach.config import settings
from outreach.db.pool import db_pool
from outreach.infrastructure.observability.logging import get_logger, log_request, setup_logging
from outreach.routes import cron, health

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """The pool lives as long as the API process; cron requests borrow from it."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)
    await db_pool.initialize()

    yield

    logger.info("Application shutting down")
    await db_pool.close()


app = FastAPI(
    title="Outreach Pipeline",
    description="Draft generation, autosend gate, outbox and Slack conversation state jobs",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(cron.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.time() - start_time) * 1000, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
