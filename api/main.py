"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, etl, imports, connections
from core.config import settings
from core.database import async_session_maker
from core.exceptions import (
    ConnectorError,
    ETLException,
    PipelineValidationError,
    RunStateConflict,
    SpreadsheetError,
)
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from ingestion.scheduler import StaleRunScheduler, build_reconcilers
from schemas.pipeline import ExecutionResult

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Analytics ETL Engine API",
    description="Compiles and executes ETL pipelines into warehouse tables",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Stale-run sweeping lives in the web process, not in the engine
scheduler = StaleRunScheduler(build_reconcilers(async_session_maker))


# Include routers
app.include_router(health.router)
app.include_router(etl.router)
app.include_router(imports.router)
app.include_router(connections.router)


def error_status(exc: ETLException) -> int:
    if isinstance(exc, RunStateConflict):
        return 409
    if isinstance(exc, (PipelineValidationError, SpreadsheetError)):
        return 422
    if isinstance(exc, ConnectorError):
        return 502
    return 500


@app.exception_handler(ETLException)
async def etl_exception_handler(request: Request, exc: ETLException):
    """Every engine error leaves as ``{ok: false, errorKind, message}``"""
    logger.warning(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
    return JSONResponse(
        status_code=error_status(exc),
        content=ExecutionResult.failure(exc).to_response(),
    )


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Analytics ETL Engine API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Analytics ETL Engine API")
    scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Analytics ETL Engine API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "etl": "/etl",
            "imports": "/imports",
            "connections": "/connections"
        }
    }
