"""
FastAPI application for the event lifecycle engine.

The lifespan opens the runtime's session and, unless
LIFECYCLE_BACKGROUND_JOBS_ENABLED=false, re-arms persisted timers and
starts the periodic sweeps, reconciliation and escrow settlement jobs.
The lifecycle router is mounted under /api.

Run with ``python3 web_server.py`` or ``uvicorn backend.src.main:app``.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from backend.src.api import lifecycle
from backend.src.config.settings import get_settings
from backend.src.db.database import SessionLocal
from backend.src.runtime import LifecycleRuntime
from backend.src.utils.logging_config import get_logger, init_logging


SERVICE_NAME = "event-lifecycle-engine"
SERVICE_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the runtime for the lifetime of the process."""
    logger = get_logger("api")
    settings = get_settings()

    db = SessionLocal()
    runtime = LifecycleRuntime(db, settings)
    app.state.lifecycle_runtime = runtime

    if settings.background_jobs_enabled:
        await runtime.start()
    else:
        logger.info("Background jobs disabled, serving the lifecycle API only")
    logger.info(f"{SERVICE_NAME} {SERVICE_VERSION} started")

    try:
        yield
    finally:
        logger.info(f"{SERVICE_NAME} shutting down")
        await runtime.stop()
        db.close()


init_logging()

app = FastAPI(
    title="Event Lifecycle Engine API",
    description="Guarded status transitions for events and tickets, exact-time "
                "scheduling, periodic sweeps and drift reconciliation.",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Pydantic errors raised outside request parsing (e.g. building a response)."""
    get_logger("api").warning(
        f"Validation error on {request.method} {request.url.path}",
        extra={"errors": exc.errors()},
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "Validation Error", "details": exc.errors()},
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """
    Datastore errors that escaped the executor (introspection reads).

    The shared session is rolled back so the scheduler and jobs can keep
    using it.
    """
    get_logger("db").error(
        f"Database error on {request.method} {request.url.path}: {exc}"
    )

    runtime = getattr(request.app.state, "lifecycle_runtime", None)
    if runtime is not None:
        runtime.db.rollback()

    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "Database Error", "message": "Datastore unavailable, retry later"},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    get_logger("api").error(
        f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}",
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal Server Error"},
    )


@app.get("/health", tags=["Health"])
async def health_check(request: Request) -> Dict[str, Any]:
    """Liveness plus the running periodic jobs and armed timer count."""
    runtime = getattr(request.app.state, "lifecycle_runtime", None)
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "periodic_jobs": [r.name for r in runtime.runners if r.is_running] if runtime else [],
        "armed_timers": runtime.scheduler.armed_count if runtime else 0,
    }


app.include_router(lifecycle.router, prefix="/api")
