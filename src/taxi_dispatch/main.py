"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown: the service graph, Redis,
and the background loops (health monitor + cleanup sweeper).

Tests pass a prebuilt Services graph to create_app(); the lifespan then
leaves construction and teardown to the caller.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taxi_dispatch import __version__
from taxi_dispatch.api import api_router
from taxi_dispatch.config import settings
from taxi_dispatch.container import Services, build_services
from taxi_dispatch.middleware.request_id import RequestIdMiddleware

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs
    at shutdown.
    """
    logger.info(
        "taxi.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    owns_services = app.state.services is None
    if owns_services:
        from taxi_dispatch.db.engine import async_session_factory
        app.state.services = build_services(settings, async_session_factory)
    services: Services = app.state.services

    # Redis is optional; ride events are simply not published without it
    from taxi_dispatch.realtime.pubsub import close_redis, init_redis
    try:
        await init_redis()
        logger.info("taxi.redis_connected", url=settings.redis_url)
    except Exception as e:
        logger.warning("taxi.redis_unavailable", error=str(e))

    worker = None
    worker_task = None
    if owns_services and settings.run_background_loops:
        from taxi_dispatch.worker.loops import BackgroundWorker
        worker = BackgroundWorker(services)
        worker_task = asyncio.create_task(worker.start())
        logger.info("taxi.background_loops_started")

    yield

    logger.info("taxi.shutdown")

    if worker is not None:
        worker.stop()
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass

    await close_redis()

    if owns_services:
        await services.aclose()
        from taxi_dispatch.db.engine import engine
        await engine.dispose()


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="Taxi Dispatch",
        description="Ride request dispatch for a taxi cooperative over a chat gateway",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: RequestId → CORS → handler
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)

    app.include_router(api_router)
    return app


# Default app instance (used by uvicorn: taxi_dispatch.main:app)
app = create_app()


def run():
    """Entry point for `taxi-api`."""
    import uvicorn

    uvicorn.run(
        "taxi_dispatch.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
