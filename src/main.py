"""
Media Ingest Pipeline - Main Application

Production-ready FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Storage abstraction (local filesystem + S3-compatible)
- Two-phase direct upload with an abandoned-session reaper
"""

import asyncio
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import make_url
import redis.asyncio as redis

from src.core.config import settings
from src.core.database import create_db_and_tables, engine
from src.core.logging import setup_logging, get_logger
from src.core.exceptions import register_exception_handlers
from src.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from src.core.storage import create_storage
from src.engines.media.processor import ImageProcessor
from src.engines.media.repositories import (
    InMemoryUploadSessionRepository,
    RedisUploadSessionRepository,
)
from src.engines.media.services import UploadOrchestrator
from src.api.v1 import api_v1_router


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


# =============================================================================
# Background Reaper
# =============================================================================

async def sweep_abandoned_uploads_periodically(app: FastAPI, interval_seconds: int):
    """Reclaim raw uploads of expired sessions every interval_seconds."""
    while True:
        await asyncio.sleep(interval_seconds)
        orchestrator = UploadOrchestrator(
            storage=app.state.storage,
            sessions=app.state.upload_sessions,
            processor=app.state.processor,
            config=app.state.settings,
        )
        try:
            await orchestrator.sweep_abandoned()
        except Exception as e:
            # Next tick retries; the sessions stay in the store
            logger.warning("session_sweep_failed", error=str(e), error_type=type(e).__name__)


def _ensure_sqlite_directory(database_url: str):
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - startup and shutdown.

    Every process-wide collaborator is built here once and kept on app.state;
    request handlers receive them through dependencies.
    """
    startup_start = time.time()

    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )
    app.state.settings = settings

    # Initialize database
    _ensure_sqlite_directory(settings.DATABASE_URL)
    await create_db_and_tables()
    logger.info("database_initialized")

    # Storage variant is fixed for the life of the process
    app.state.storage = create_storage(settings)

    # Upload session store
    app.state.redis = None
    if settings.SESSION_BACKEND.lower() == "memory":
        app.state.upload_sessions = InMemoryUploadSessionRepository()
        logger.info("session_store_initialized", backend="memory")
    else:
        app.state.redis = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True
        )
        app.state.upload_sessions = RedisUploadSessionRepository(
            app.state.redis,
            retention_seconds=settings.UPLOAD_SESSION_RETENTION_SECONDS,
        )
        logger.info("redis_connected", url=settings.REDIS_URL)

    app.state.processor = ImageProcessor(max_workers=settings.MEDIA_PROCESSING_WORKERS)

    # Set Prometheus app info
    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    sweeper = None
    if settings.SESSION_SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(
            sweep_abandoned_uploads_periodically(app, settings.SESSION_SWEEP_INTERVAL_SECONDS)
        )
        logger.info("session_sweeper_started", interval_seconds=settings.SESSION_SWEEP_INTERVAL_SECONDS)

    startup_time = time.time() - startup_start
    logger.info("application_ready", startup_time_seconds=startup_time)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
    if app.state.redis is not None:
        await app.state.redis.aclose()
    await engine.dispose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Image ingest service with:

    - **Two-phase upload**: sign, transfer bytes directly to storage, complete
    - **Derivatives**: original re-encoded plus 1920w / 1280w / 640w / 320w (never upscaled)
    - **Codecs**: WEBP, AVIF, JPEG, PNG
    - **Placeholders**: BlurHash string and average color per asset
    - **Storage**: local filesystem or any S3-compatible object store
    - **Observability**: Structured logging, Prometheus metrics

    ## API Versioning

    All endpoints are versioned under `/api/v1/`

    ## Upload Flow

    1. **Sign** - `POST /api/v1/media/sign` validates declared metadata
    2. **Transfer** - client `PUT`s the raw bytes to the returned target
    3. **Complete** - `POST /api/v1/media/complete` processes and persists the manifest
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# =============================================================================
# Middleware
# =============================================================================

# CORS
cors_origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Route template keeps label cardinality bounded (no keys or ids)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", "unmatched")

    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code
    ).inc()

    response.headers["X-Process-Time"] = str(duration)

    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_v1_router)


# =============================================================================
# Static Files
# =============================================================================

# Serve locally stored artifacts at their public URL
if settings.STORAGE_BACKEND.lower() == "local" and settings.LOCAL_PUBLIC_URL.startswith("/"):
    Path(settings.LOCAL_STORAGE_PATH).mkdir(parents=True, exist_ok=True)
    app.mount(
        settings.LOCAL_PUBLIC_URL.rstrip("/"),
        StaticFiles(directory=settings.LOCAL_STORAGE_PATH),
        name="storage"
    )


# =============================================================================
# Root Endpoints
# =============================================================================

@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/api/docs",
        "api_v1": "/api/v1",
        "media": "/api/v1/media",
        "metrics": "/api/v1/metrics",
        "storage_backend": settings.STORAGE_BACKEND,
    }


@app.get("/health", tags=["health"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


@app.get("/ready", tags=["health"])
async def ready(request: Request):
    """Readiness check - verifies dependencies are available."""
    checks = {
        "database": False,
        "session_store": False,
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.warning("readiness_check_failed", dependency="database", error=str(e))

    try:
        checks["session_store"] = await request.app.state.upload_sessions.ping()
    except Exception as e:
        logger.warning("readiness_check_failed", dependency="session_store", error=str(e))

    all_ready = all(checks.values())

    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "ready": all_ready,
            "checks": checks,
        }
    )


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
