"""Health monitor — transport liveness, resource pressure, batch sizing.

Learn: A background loop runs every `health_check_interval_seconds`:

1. Check the messaging transport. When it is down, wait
   `reconnect_delay_seconds` and make ONE reconnection attempt. The next
   tick tries again, so attempts stay bounded and never pile up.
2. Sample process RSS, system memory, CPU and load average. Each alert
   kind (memory warning, memory critical, cpu warning, ...) has its own
   cooldown so a sustained spike logs once per window, not every tick.
3. Nudge the broadcast batch size: shrink by 2 under pressure, grow by 2
   when the box is idle, always within [min_batch_size, max_batch_size].
   The NotificationDispatcher reads `current_batch_size_hint()` before
   every fan-out.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from taxi_dispatch.config import Settings
from taxi_dispatch.monitor.resources import ResourceSampler, ResourceUsage
from taxi_dispatch.notifications.transport import MessagingTransport

logger = structlog.get_logger()

BATCH_STEP = 2


class HealthMonitor:
    """Periodic liveness + resource checks for one worker process."""

    def __init__(
        self,
        transport: MessagingTransport,
        settings: Settings,
        *,
        sampler: Optional[ResourceSampler] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transport = transport
        self.settings = settings
        self.sampler = sampler or ResourceSampler()
        self.clock = clock

        self.connected: Optional[bool] = None
        self.last_check_at: Optional[datetime] = None
        self.last_usage: Optional[ResourceUsage] = None
        self.reconnect_attempts = 0
        self.reconnect_failures = 0
        self.critical = False
        self.alerts: dict[str, int] = {}

        self._batch_hint = settings.batch_size
        self._cooldowns: dict[str, float] = {}
        self._running = False

    # ─── Loop ─────────────────────────────────────────────

    async def run(self) -> None:
        """Check forever until stop() is called or the task is cancelled."""
        self._running = True
        logger.info(
            "health.monitor_started",
            interval=self.settings.health_check_interval_seconds,
            transport=self.transport.name,
        )
        while self._running:
            try:
                await self.check_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("health.check_failed")
            try:
                await asyncio.sleep(self.settings.health_check_interval_seconds)
            except asyncio.CancelledError:
                break
        logger.info("health.monitor_stopped")

    def stop(self) -> None:
        self._running = False

    async def check_once(self) -> None:
        await self.check_connection()
        usage = self.sampler.sample()
        self.last_usage = usage
        self.last_check_at = datetime.now(timezone.utc)
        self._check_resources(usage)
        self._adjust_batch_hint(usage)
        if self._cooldown_passed("usage_log", self.settings.usage_log_interval_seconds):
            logger.info("health.resource_usage", **usage.as_dict(), batch_hint=self._batch_hint)

    async def check_connection(self) -> bool:
        try:
            self.connected = await self.transport.is_connected()
        except Exception as e:
            logger.warning("health.connection_check_failed", error=str(e))
            self.connected = False

        if self.connected:
            return True

        logger.warning("health.transport_down", transport=self.transport.name)
        await asyncio.sleep(self.settings.reconnect_delay_seconds)
        self.reconnect_attempts += 1
        try:
            await self.transport.reconnect()
            self.connected = await self.transport.is_connected()
        except Exception as e:
            self.reconnect_failures += 1
            logger.error("health.reconnect_failed", error=str(e))
            self.connected = False
            return False

        if self.connected:
            logger.info("health.reconnected", attempts=self.reconnect_attempts)
        else:
            self.reconnect_failures += 1
            logger.error("health.reconnect_failed", error="still disconnected")
        return self.connected

    # ─── Resources ────────────────────────────────────────

    def _cooldown_passed(self, kind: str, cooldown: float) -> bool:
        now = self.clock()
        last = self._cooldowns.get(kind)
        if last is not None and now - last < cooldown:
            return False
        self._cooldowns[kind] = now
        return True

    def _alert(self, kind: str, cooldown: float, critical: bool, **context) -> None:
        if not self._cooldown_passed(kind, cooldown):
            return
        self.alerts[kind] = self.alerts.get(kind, 0) + 1
        if critical:
            logger.error(f"health.{kind}", **context)
        else:
            logger.warning(f"health.{kind}", **context)

    def _check_resources(self, usage: ResourceUsage) -> None:
        s = self.settings
        warn_cd = s.alert_cooldown_seconds
        crit_cd = s.critical_alert_cooldown_seconds

        if usage.process_rss_mb > s.memory_warning_mb:
            self._alert(
                "memory_warning", warn_cd, False,
                rss_mb=usage.process_rss_mb, limit_mb=s.memory_critical_mb,
            )
        if usage.process_rss_mb > s.memory_critical_mb:
            self._alert(
                "memory_critical", crit_cd, True,
                rss_mb=usage.process_rss_mb, limit_mb=s.memory_critical_mb,
            )
        if usage.memory_percent > s.system_memory_warning_percent:
            self._alert(
                "system_memory_warning", warn_cd, False,
                percent=usage.memory_percent,
                used_mb=usage.memory_used_mb,
                total_mb=usage.memory_total_mb,
            )
        if usage.cpu_percent > s.cpu_warning_percent:
            self._alert(
                "cpu_warning", crit_cd, False,
                cpu_percent=usage.cpu_percent, load_average=list(usage.load_average),
            )
        if usage.cpu_percent > s.cpu_critical_percent:
            self._alert("cpu_critical", crit_cd, True, cpu_percent=usage.cpu_percent)

        self.critical = (
            usage.process_rss_mb > s.memory_critical_mb
            or usage.cpu_percent > s.cpu_critical_percent
        )

    def under_pressure(self, usage: ResourceUsage) -> bool:
        s = self.settings
        return (
            usage.process_rss_mb > s.memory_warning_mb
            or usage.cpu_percent > s.cpu_warning_percent
            or usage.memory_percent > s.system_memory_warning_percent
        )

    def _adjust_batch_hint(self, usage: ResourceUsage) -> None:
        s = self.settings
        before = self._batch_hint
        if self.under_pressure(usage) or self.connected is False:
            self._batch_hint -= BATCH_STEP
        elif usage.process_rss_mb < s.idle_memory_mb and usage.cpu_percent < s.idle_cpu_percent:
            self._batch_hint += BATCH_STEP
        self._batch_hint = max(s.min_batch_size, min(s.max_batch_size, self._batch_hint))
        if self._batch_hint != before:
            logger.info("health.batch_size_adjusted", old=before, new=self._batch_hint)

    # ─── Queries ──────────────────────────────────────────

    def current_batch_size_hint(self) -> int:
        return self._batch_hint

    def is_healthy(self) -> bool:
        return self.connected is not False and not self.critical

    def snapshot(self) -> dict:
        return {
            "healthy": self.is_healthy(),
            "transport": self.transport.name,
            "connected": self.connected,
            "last_check_at": self.last_check_at.isoformat() if self.last_check_at else None,
            "reconnect_attempts": self.reconnect_attempts,
            "reconnect_failures": self.reconnect_failures,
            "batch_size_hint": self._batch_hint,
            "alerts": dict(self.alerts),
            "resources": self.last_usage.as_dict() if self.last_usage else None,
        }
