"""
FastAPI application entry point.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from memorymesh import __version__
from memorymesh.api.errors import register_exception_handlers
from memorymesh.api.routes import auth_router, health_router, jobs_router, queues_router
from memorymesh.cache.store import TieredCache, setup_cache
from memorymesh.config import QueueMode, get_settings
from memorymesh.dashboard import QueueDashboard
from memorymesh.dispatcher import JobDispatcher
from memorymesh.observability.logging import setup_logging
from memorymesh.observability.metrics import setup_metrics
from memorymesh.observability.tracing import instrument_fastapi, setup_tracing
from memorymesh.queues.registry import QueueRegistry
from memorymesh.reaper.main import Reaper
from memorymesh.worker.main import Worker, load_handler_modules

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Starts the queue registry (eagerly or deferred, by queue mode). In
    memory mode the queues only exist in this process, so a worker and a
    reaper run here as background tasks.
    """
    # Startup
    settings = get_settings()
    setup_logging("api")
    setup_tracing()

    registry: QueueRegistry = app.state.registry
    cache: TieredCache = app.state.cache

    # Raises QueueUnavailable in production when the broker is unreachable
    await registry.start()

    background: list[asyncio.Task] = []
    if registry.mode == QueueMode.MEMORY:
        load_handler_modules(settings.worker_handler_modules)
        worker = Worker(registry, cache=cache)
        reaper = Reaper(registry)
        background = [
            asyncio.create_task(worker.start()),
            asyncio.create_task(reaper.start()),
        ]
        logger.info("Embedded worker started for memory queues")

    logger.info("Application started", extra={"queue_mode": str(registry.mode)})

    yield

    # Shutdown
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)

    await cache.close()
    await registry.close()
    logger.info("Application shutdown")


def create_app(
    registry: QueueRegistry | None = None,
    cache: TieredCache | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        registry: Queue registry. Built from settings if omitted.
        cache: Cache for dispatcher lookups. The process-wide cache if omitted.

    Returns:
        FastAPI: The configured application instance.
    """
    settings = get_settings()
    metrics = setup_metrics()

    app = FastAPI(
        title="MemoryMesh Dispatch API",
        description="Background job dispatch for media analysis and notifications",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    registry = registry or QueueRegistry(settings, metrics=metrics)
    cache = setup_cache(cache)

    app.state.registry = registry
    app.state.cache = cache
    app.state.dispatcher = JobDispatcher(registry, cache=cache, metrics=metrics)
    app.state.dashboard = QueueDashboard(registry, metrics=metrics)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Include routers
    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(jobs_router)
    app.include_router(queues_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        "memorymesh.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    run()
