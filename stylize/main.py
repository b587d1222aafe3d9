"""
Stylize API - Async Image Generation Pipeline
FastAPI Backend Entry Point
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stylize import __version__
from stylize.core.config import settings
from stylize.core.database import init_db
from stylize.core.exceptions import ServiceError, service_error_handler, worker_error_handler
from stylize.api import files, internal, jobs
from stylize.workers.base import WorkerException

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("stylize")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info(f"Starting {settings.APP_NAME} (dispatch={settings.DISPATCH_MODE}, storage={settings.STORAGE_BACKEND})")
    init_db()

    stop = asyncio.Event()
    sweep_task = None
    if settings.SWEEP_ENABLED and settings.DISPATCH_MODE == "inline":
        from stylize.workers.dispatch import get_dispatcher
        from stylize.workers.sweep import RecoverySweep
        sweep_task = asyncio.create_task(RecoverySweep(get_dispatcher()).run_forever(stop=stop))

    yield

    logger.info(f"Shutting down {settings.APP_NAME}...")
    stop.set()
    if sweep_task is not None:
        await sweep_task
    if settings.DISPATCH_MODE == "inline":
        from stylize.workers.dispatch import get_dispatcher
        await get_dispatcher().drain()


app = FastAPI(
    title=settings.APP_NAME,
    description="Asynchronous image generation jobs with versioned refinement",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ServiceError, service_error_handler)
app.add_exception_handler(WorkerException, worker_error_handler)

# Include routers
app.include_router(jobs.router, prefix="/api/v1/jobs", tags=["Jobs"])
app.include_router(internal.router, prefix="/internal", tags=["Internal"])
app.include_router(files.router, prefix="/files", tags=["Files"])


def _probe_database() -> str:
    from sqlalchemy import text
    from stylize.core.database import SessionLocal

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    finally:
        db.close()
    return "ok"


def _probe_redis() -> str:
    from stylize.core.redis import redis_health_check

    health = redis_health_check()
    if not health.get("connected"):
        raise ConnectionError(health.get("error", "not connected"))
    return f"ok ({health.get('redis_version')})"


async def _probe_storage() -> str:
    from stylize.services.storage import StoragePool, get_storage

    await get_storage().exists(StoragePool.PRIVATE, ".health")
    return "ok"


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Liveness plus a probe of each backing service.
    Any failed probe marks the service degraded; the endpoint itself still answers 200.
    """
    probes = {"database": _probe_database, "storage": _probe_storage}
    # Redis only backs RQ dispatch and the URL cache
    if settings.DISPATCH_MODE == "rq" or settings.SIGNED_URL_CACHE_ENABLED:
        probes["redis"] = _probe_redis

    services = {}
    for name, probe in probes.items():
        try:
            outcome = probe()
            services[name] = await outcome if asyncio.iscoroutine(outcome) else outcome
        except Exception as e:
            logger.warning(f"[Health] {name} probe failed: {e}")
            services[name] = f"error: {e}"

    status = {
        "status": "healthy" if all(v.startswith("ok") for v in services.values()) else "degraded",
        "version": __version__,
        "dispatch": settings.DISPATCH_MODE,
        "storage_backend": settings.STORAGE_BACKEND,
        "services": services,
    }
    if settings.DISPATCH_MODE == "rq" and services.get("redis", "").startswith("ok"):
        from stylize.workers.queue import get_queue_manager
        status["queues"] = get_queue_manager().get_queue_stats()
    return status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"{settings.APP_NAME} - Async Image Generation Pipeline",
        "docs": "/docs",
        "health": "/health",
    }
