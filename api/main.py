"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, pipelines, stats
from api.middleware import RequestContextMiddleware
from api.dependencies import get_coordinator
from core.config import settings
from core.exceptions import (
    AlreadyRunning,
    ETLException,
    LoadConflict,
    PipelineNotFound,
    RetriesExhausted,
)
from core.logging import setup_logging
from pipeline.scheduler import PipelineScheduler
import logging

# Configure logging
setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Star Schema ETL API",
    description="Idempotent incremental loads from operational sources into a star-schema warehouse",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Created on startup when SCHEDULER_ENABLED is set
scheduler = None

ERROR_STATUS_CODES = [
    (PipelineNotFound, 404),
    (AlreadyRunning, 409),
    (LoadConflict, 409),
    (RetriesExhausted, 503),
]


def status_code_for(exc: ETLException) -> int:
    for exc_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 500


@app.exception_handler(ETLException)
async def etl_exception_handler(request: Request, exc: ETLException):
    """Structured error body for every pipeline error"""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {status_code} {exc.__class__.__name__}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# Include routers
app.include_router(health.router)
app.include_router(pipelines.router)
app.include_router(stats.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    global scheduler

    logger.info("Starting Star Schema ETL API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    # Start Scheduler
    if settings.SCHEDULER_ENABLED:
        scheduler = PipelineScheduler(get_coordinator())
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Star Schema ETL API")
    if scheduler is not None:
        scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Star Schema ETL API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "pipelines": "/pipelines",
            "stats": "/stats"
        }
    }
