"""
Juchang AI FastAPI Application.

Chat endpoint plus thread, quota and match management for the platform
frontend.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from juchang_ai import __version__
from juchang_ai.api.routes import chat, threads
from juchang_ai.config import settings
from juchang_ai.exceptions import JuchangError, RateLimitedError
from juchang_ai.jobs.worker import get_worker_stats, start_worker, stop_worker
from juchang_ai.logging_config import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI application.

    Starts the background job worker and stops it on shutdown.
    """
    setup_logging(context="api")

    if settings.worker_enabled:
        start_worker()
        logger.info("✓ Job worker started")

    logger.info("Application startup complete")

    yield

    logger.info("Application shutdown initiated...")
    try:
        stop_worker(timeout=10)
    except Exception as e:
        logger.error(f"Error during shutdown: {e}", exc_info=True)

    logger.info("Application shutdown complete")


app = FastAPI(
    lifespan=lifespan,
    title="Juchang AI",
    description="Conversation orchestration for the Juchang meetup assistant",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(JuchangError)
async def juchang_error_handler(request: Request, exc: JuchangError) -> JSONResponse:
    """Map domain errors to ``{code, message}`` with the error's status."""
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(int(exc.retry_after) + 1)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.code, "message": exc.message},
        headers=headers,
    )


@app.get("/health")
def health() -> dict:
    """Health check endpoint."""
    from juchang_ai.db.connection import check_connection

    db_status = "healthy" if check_connection() else "unhealthy"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database": db_status,
        "worker": get_worker_stats(),
    }


app.include_router(chat.router, prefix="/ai", tags=["chat"])
app.include_router(threads.router, prefix="/ai", tags=["threads"])
