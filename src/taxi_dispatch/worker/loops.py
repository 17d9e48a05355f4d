"""Background worker — health monitoring and stale-request cleanup.

Learn: Two long-running loops, started together with asyncio.gather:

1. Health monitor — transport liveness + resource sampling (30s)
2. Cleanup sweeper — cancels PENDING requests older than
   request_timeout_minutes, every cleanup_interval_minutes

Each loop catches its own exceptions, logs them, and keeps going. Only
cancellation (or stop()) ends a loop. The same worker runs inside the
API process (lifespan) or standalone via `taxi-worker`.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from taxi_dispatch.container import Services

logger = logging.getLogger("taxi_dispatch.worker")


@dataclass
class WorkerStats:
    """Runtime statistics for monitoring."""
    sweeps: int = 0
    cancelled: int = 0
    errors: int = 0
    started_at: Optional[datetime] = None


class BackgroundWorker:
    def __init__(self, services: Services):
        self.services = services
        self.settings = services.settings
        self.stats = WorkerStats()
        self._running = False

    async def start(self):
        """Run every loop until stop() or cancellation."""
        logger.info(
            "Starting background worker (cleanup every %d min, health every %.0fs)",
            self.settings.cleanup_interval_minutes,
            self.settings.health_check_interval_seconds,
        )
        self.stats.started_at = datetime.now(timezone.utc)
        self._running = True
        try:
            await asyncio.gather(
                self.services.health.run(),
                self._cleanup_loop(),
            )
        finally:
            self._running = False

    def stop(self):
        self._running = False
        self.services.health.stop()
        logger.info(
            "Stopping background worker (sweeps=%d, cancelled=%d, errors=%d)",
            self.stats.sweeps,
            self.stats.cancelled,
            self.stats.errors,
        )

    async def sweep_once(self) -> int:
        cancelled = await self.services.dispatch.cleanup_expired()
        self.stats.sweeps += 1
        self.stats.cancelled += cancelled
        return cancelled

    async def _cleanup_loop(self):
        """Periodic cleanup of PENDING requests nobody answered."""
        interval = self.settings.cleanup_interval_minutes * 60
        while self._running:
            try:
                await asyncio.sleep(interval)
                if not self._running:
                    break
                cancelled = await self.sweep_once()
                if cancelled:
                    logger.info("Cancelled %d expired pending requests", cancelled)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in cleanup loop")
                self.stats.errors += 1

    def get_stats(self) -> dict:
        return {
            "sweeps": self.stats.sweeps,
            "cancelled": self.stats.cancelled,
            "errors": self.stats.errors,
            "running": self._running,
            "started_at": (
                self.stats.started_at.isoformat() if self.stats.started_at else None
            ),
            "health": self.services.health.snapshot(),
        }
