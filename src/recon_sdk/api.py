"""FastAPI application exposing the reconciliation service."""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from .auth import limiter
from .database import close_db, get_async_session_factory, init_db
from .reconciliation.api import router as reconciliation_router
from .reconciliation.manager import ReconciliationJobManager

logger = logging.getLogger(__name__)


def scheduling_enabled() -> bool:
    return os.getenv("ENABLE_SCHEDULED_RECONCILIATION", "false").lower() in ("1", "true", "yes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database, build the job manager and start the scheduler if enabled."""
    await init_db()
    manager = ReconciliationJobManager(get_async_session_factory())
    app.state.reconciliation_manager = manager

    if scheduling_enabled():
        manager.schedule_reconciliations()

    try:
        yield
    finally:
        if manager.scheduler is not None:
            manager.scheduler.shutdown()
        await close_db()


app = FastAPI(title="Reconciliation Service", lifespan=lifespan)

app.state.limiter = limiter


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when a client exceeds the rate limit."""
    logger.warning(f"Rate limit exceeded for {request.client.host if request.client else 'unknown'}")
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded: {exc.detail}"},
    )


app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
app.include_router(reconciliation_router)
