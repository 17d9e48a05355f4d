"""Worker entry point — run the background loops as a separate process.

Learn: Deployments that run several API replicas set
TAXI_RUN_BACKGROUND_LOOPS=false on them and run exactly one worker, so
the cleanup sweep and transport health checks happen once, not per
replica.

Usage:
    python -m taxi_dispatch.worker.main

Or via the installed script:
    taxi-worker
"""

import asyncio
import logging
import signal

from taxi_dispatch.config import settings
from taxi_dispatch.container import build_services
from taxi_dispatch.db.engine import async_session_factory, engine
from taxi_dispatch.worker.loops import BackgroundWorker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("taxi_dispatch.worker")


async def run():
    """Run the worker until interrupted."""
    services = build_services(settings, async_session_factory, publish_events=False)
    worker = BackgroundWorker(services)
    task = asyncio.create_task(worker.start())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, task.cancel)

    db_url = settings.database_url
    logger.info("Worker starting (DB: %s)", db_url.split("@")[1] if "@" in db_url else db_url)

    try:
        await task
    except asyncio.CancelledError:
        pass
    finally:
        worker.stop()
        await services.aclose()
        await engine.dispose()
        logger.info("Worker stopped. Stats: %s", worker.get_stats())


def main():
    """CLI entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
