"""
Main FastAPI application for the Inventory Sync API.
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text

from app.core.config import settings
from app.core.database import SessionLocal, init_db, run_in_db_executor, shutdown_db_executor
from app.core.logging import configure_logging
from app.core.middleware import CorrelationIdMiddleware
from app.core.rate_limit import limiter
from app.core import metrics
from app.api.routes import sync
from app.services.sync.adapters.directory_client import DirectoryClient
from app.services.sync.adapters.management_client import ManagementClient
from app.services.sync.orchestrator import SyncOrchestrator
from app.services.sync.run_registry import SyncTaskRegistry

# Load environment variables from .env file
from dotenv import load_dotenv
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# Configure structured logging with JSON formatter
configure_logging(
    level=settings.LOG_LEVEL,
    json_output=not settings.is_development()
)
logger = logging.getLogger(__name__)

# Seconds to wait for in-flight syncs on shutdown before cancelling them
SHUTDOWN_DRAIN_SECONDS = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan events."""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    init_db()

    registry = SyncTaskRegistry()
    orchestrator = SyncOrchestrator(
        session_factory=SessionLocal,
        directory_client=DirectoryClient(),
        management_client=ManagementClient(),
        registry=registry,
    )
    app.state.registry = registry
    app.state.orchestrator = orchestrator

    # Runs left open past the ceiling by a previous process
    recovered = await run_in_db_executor(orchestrator.recover_abandoned_runs)
    if recovered:
        logger.warning(f"Closed {recovered} sync runs abandoned by a previous process")

    from app.core.scheduler import start_scheduler
    await start_scheduler(orchestrator)
    logger.info("Automation scheduler started")
    metrics.update_scheduler_metrics()

    logger.info("Application started")

    yield

    # Shutdown
    from app.core.scheduler import stop_scheduler
    await stop_scheduler()
    logger.info("Automation scheduler stopped")

    cancelled = await registry.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
    if cancelled:
        logger.warning(f"Cancelled {cancelled} sync tasks still running at shutdown")
    await orchestrator.cleanup()
    shutdown_db_executor()
    logger.info("Shutting down application")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Employee and device inventory sync between the identity directory and device management",
    lifespan=lifespan
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add correlation ID middleware (must be added before CORS for proper header handling)
app.add_middleware(CorrelationIdMiddleware)

# Initialize Prometheus metrics BEFORE including routes
instrumentator = Instrumentator()
instrumentator.instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)
logger.info("Prometheus metrics initialized at /metrics")

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API v1 - All routes use /api/v1/ prefix for versioning
app.include_router(sync.router, prefix="/api/v1")


@app.get("/")
@limiter.limit("60/minute")
async def root(request: Request):
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "endpoints": {
            "api_version": "v1",
            "sync": {
                "trigger": "/api/v1/sync/{directory|devices|all}",
                "status": "/api/v1/sync/status/{run_id}",
                "logs": "/api/v1/sync/logs"
            },
            "docs": "/docs",
            "health": "/health"
        }
    }


@app.get("/health")
@limiter.limit("120/minute")  # Higher limit for health checks
async def health_check(request: Request):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


def _ping_database() -> None:
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    finally:
        db.close()


@app.get("/api/health")
@limiter.limit("60/minute")
async def api_health(request: Request):
    """Detailed API health check with component-level status."""
    health_status = {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "components": {}
    }

    all_healthy = True

    # 1. Database Health Check
    try:
        await run_in_db_executor(_ping_database)
        health_status["components"]["database"] = {"status": "connected"}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["components"]["database"] = {
            "status": "unhealthy",
            "error": str(e)
        }
        all_healthy = False

    # 2. Scheduler Health Check
    try:
        from app.core.scheduler import get_scheduler

        scheduler = get_scheduler()
        if scheduler and scheduler.running:
            jobs = scheduler.scheduler.get_jobs() if scheduler.scheduler else []
            health_status["components"]["scheduler"] = {
                "status": "running",
                "jobs_count": len(jobs),
                "jobs": [{"id": j.id, "name": j.name} for j in jobs]
            }
        else:
            health_status["components"]["scheduler"] = {
                "status": "stopped"
            }
            all_healthy = False

        metrics.update_scheduler_metrics()

    except Exception as e:
        logger.error(f"Scheduler health check failed: {e}")
        health_status["components"]["scheduler"] = {
            "status": "error",
            "error": str(e)
        }
        all_healthy = False

    # 3. In-flight syncs
    registry = getattr(request.app.state, "registry", None)
    health_status["components"]["sync"] = {
        "active_tasks": registry.active_keys() if registry else []
    }

    if not all_healthy:
        health_status["status"] = "degraded"

    return health_status


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG
    )
