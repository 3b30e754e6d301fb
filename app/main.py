"""
Idempotency Gateway - Main Application
FastAPI Entry Point with APScheduler for Idempotency Housekeeping
"""

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
import structlog

from app.config import settings
from app.database import init_db
from app.middleware import CorrelationIdMiddleware, IdempotencyMiddleware
from app.routers import admin_router, payments_router
from app.scheduler import start_scheduler, stop_scheduler
from app.services.monitoring import add_correlation_id, init_sentry, setup_logging

# Structured Logging Setup
setup_logging()
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        add_correlation_id,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.JSONRenderer()
    ]
)
logger = structlog.get_logger()

# Error tracking (before the app is created)
init_sentry()

# FastAPI App
app = FastAPI(
    title="Idempotency Gateway",
    description="At-most-once execution for HTTP write requests and queued jobs",
    version="0.1.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
)

# Middleware (last added runs first: correlation ID wraps idempotency)
app.add_middleware(IdempotencyMiddleware)
app.add_middleware(CorrelationIdMiddleware)

# Register routers
app.include_router(payments_router)
app.include_router(admin_router)

# Set on startup
scheduler = None


@app.on_event("startup")
async def startup_event():
    """Application Startup"""
    global scheduler
    logger.info("startup", environment=settings.environment)

    # Initialize database connection
    init_db()
    logger.info("database_initialized")

    # Start housekeeping scheduler (skipped in testing)
    scheduler = start_scheduler(settings.environment)


@app.on_event("shutdown")
async def shutdown_event():
    """Application Shutdown"""
    logger.info("shutdown")
    stop_scheduler(scheduler)


@app.get("/")
async def root():
    """Root Endpoint"""
    return {
        "message": "Idempotency Gateway API",
        "version": "0.1.0",
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """
    Health Check Endpoint
    """
    health_status = {
        "status": "healthy",
        "environment": settings.environment,
        "services": {
            "api": "running",
            "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
            "idempotency_cache": "redis" if settings.redis_url else "in_memory",
        }
    }

    if settings.database_url:
        health_status["services"]["database"] = "configured"

    return JSONResponse(
        content=health_status,
        status_code=200
    )


@app.get("/metrics")
async def metrics():
    """
    Prometheus metrics in text exposition format for scraping.
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development"
    )
