"""
FastAPI Application Entry Point

This module initializes the FastAPI application and integrates:
- Scheduling API routes
- Database connections and schema
- Error mapping for scheduling failures
- Lifecycle events
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from appointment_engine.api import scheduling_router
from appointment_engine.config import settings
from appointment_engine.db.repository import DatabaseError
from appointment_engine.db.session import (
    check_database_connection,
    close_database_connection,
    create_schema,
)
from appointment_engine.errors import SchedulingError

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)
logger = logging.getLogger(__name__)

# Log startup information
logger.info("=" * 60)
logger.info("Appointment Scheduling Engine")
logger.info("=" * 60)
logger.info(f"Python version: {sys.version}")
logger.info(f"Debug mode: {settings.debug}")
logger.info(f"Log level: {settings.log_level}")
logger.info(f"Database URL: {settings.database_url_str.split('@')[0]}@***")
logger.info(f"Calendar API: {settings.google_calendar_api_url}")
logger.info(f"Calendar token configured: {'Yes' if settings.google_access_token else 'No'}")
logger.info("=" * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Handles startup and shutdown events:
    - Verifies the database connection
    - Creates the scheduling schema
    - Closes connections on shutdown
    """
    # Startup
    logger.info("🚀 Starting application...")

    logger.info("Checking database connection...")
    db_healthy = await check_database_connection()
    if db_healthy:
        logger.info("✅ Database connection verified")
        await create_schema()
    else:
        logger.error("❌ Database connection failed!")
        logger.warning("Application will start but database operations will fail")

    logger.info("✅ Application startup complete")
    logger.info("=" * 60)

    yield

    # Shutdown
    logger.info("=" * 60)
    logger.info("🛑 Shutting down application...")

    logger.info("Closing database connections...")
    await close_database_connection()
    logger.info("✅ Application shutdown complete")
    logger.info("=" * 60)


# Initialize FastAPI application
app = FastAPI(
    title="Appointment Scheduling Engine",
    description=(
        "Multi-tenant appointment scheduling. Computes availability, "
        "books, confirms, reschedules and cancels appointments, and "
        "manages calendar blocks against an external calendar."
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    """Map engine errors to their HTTP status and a structured body."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(DatabaseError)
async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} database error: {exc}")
    return JSONResponse(
        status_code=503,
        content={
            "success": False,
            "error": "database_unavailable",
            "message": "The scheduling store is unavailable",
        },
    )


@app.get("/")
async def root():
    """
    Root endpoint.

    Returns basic API information.
    """
    return {
        "message": "Appointment Scheduling Engine API",
        "version": "0.1.0",
        "status": "running",
        "endpoints": {
            "health": "/health",
            "docs": "/docs" if settings.debug else "disabled in production",
            "slots": "/tenants/{tenant_id}/slots",
            "appointments": "/tenants/{tenant_id}/appointments",
            "blocks": "/tenants/{tenant_id}/blocks",
        }
    }


@app.get("/health")
async def health_check():
    """
    Application health check endpoint.

    Checks:
    - API responsiveness
    - Database connectivity

    Returns:
        JSONResponse with health status
    """
    db_healthy = await check_database_connection()

    health_status = {
        "status": "healthy" if db_healthy else "degraded",
        "api": "operational",
        "database": "connected" if db_healthy else "disconnected",
        "version": "0.1.0",
    }

    return JSONResponse(
        status_code=200 if db_healthy else 503,
        content=health_status
    )


app.include_router(scheduling_router)

logger.info("✅ FastAPI application initialized")

# If running with uvicorn directly (not through import)
if __name__ == "__main__":
    import uvicorn

    logger.info("=" * 60)
    logger.info("Starting uvicorn server...")
    logger.info(f"Host: {settings.app_host}")
    logger.info(f"Port: {settings.app_port}")
    logger.info("=" * 60)

    uvicorn.run(
        "appointment_engine.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
