"""Reliable per-recipient delivery — timeout, retry, linear backoff, repair.

Learn: Each attempt races the transport call against `message_timeout`
(asyncio.wait_for). A timed-out attempt counts as a failure. Between
attempts we sleep `retry_delay * attempt`. When the transport reports a
corrupted session, we repair it BEFORE the next attempt.

Nothing here raises: the caller gets a DeliveryReport and decides.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from taxi_dispatch.errors import SendTimeout, SessionCorruption, TransientSendFailure
from taxi_dispatch.notifications.transport import MessagingTransport

logger = structlog.get_logger()


@dataclass
class DeliveryReport:
    identity: str
    ok: bool
    attempts: int
    duration_seconds: float
    error: Optional[str] = None


@dataclass
class RecipientHealth:
    consecutive_failures: int = 0
    total_messages: int = 0
    session_errors: int = 0
    last_success_at: Optional[datetime] = None

    @property
    def healthy(self) -> bool:
        return self.consecutive_failures < 3


@dataclass
class DeliveryStats:
    """Runtime delivery statistics for monitoring."""
    sent: int = 0
    failed: int = 0
    session_errors: int = 0
    timeouts: int = 0
    retries: int = 0
    total_latency: float = 0.0
    recipients: dict[str, RecipientHealth] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    max_recipients: int = 1000

    def _recipient(self, identity: str) -> RecipientHealth:
        # least recently touched recipient is evicted first
        health = self.recipients.pop(identity, None)
        if health is None:
            health = RecipientHealth()
            while len(self.recipients) >= self.max_recipients:
                del self.recipients[next(iter(self.recipients))]
        self.recipients[identity] = health
        return health

    def record_sent(self, identity: str, latency: float) -> None:
        self.sent += 1
        self.total_latency += latency
        health = self._recipient(identity)
        health.total_messages += 1
        health.consecutive_failures = 0
        health.last_success_at = datetime.now(timezone.utc)

    def record_failed(self, identity: str) -> None:
        self.failed += 1
        health = self._recipient(identity)
        health.total_messages += 1
        health.consecutive_failures += 1

    def record_session_error(self, identity: str) -> None:
        self.session_errors += 1
        self._recipient(identity).session_errors += 1

    def unhealthy_recipients(self) -> list[str]:
        return [k for k, v in self.recipients.items() if not v.healthy]

    def as_dict(self) -> dict:
        delivered = self.sent + self.failed
        return {
            "sent": self.sent,
            "failed": self.failed,
            "retries": self.retries,
            "session_errors": self.session_errors,
            "timeouts": self.timeouts,
            "error_rate": round(self.failed / delivered * 100, 2) if delivered else 0.0,
            "average_latency_ms": (
                round(self.total_latency / self.sent * 1000, 1) if self.sent else 0.0
            ),
            "unhealthy_recipients": len(self.unhealthy_recipients()),
            "started_at": self.started_at.isoformat(),
        }


class ReliableSender:
    """Wraps a transport with per-attempt timeout and bounded retries."""

    def __init__(
        self,
        transport: MessagingTransport,
        *,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        message_timeout: float = 20.0,
        stats: Optional[DeliveryStats] = None,
    ):
        self.transport = transport
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.message_timeout = message_timeout
        self.stats = stats or DeliveryStats()

    async def send(self, identity: str, payload: dict[str, Any]) -> DeliveryReport:
        """Deliver with up to `max_retries` attempts. Never raises."""
        started = time.monotonic()
        last_error: Optional[Exception] = None
        log = logger.bind(identity=identity)

        for attempt in range(1, self.max_retries + 1):
            try:
                await self._attempt(identity, payload)
            except SessionCorruption as e:
                last_error = e
                self.stats.record_session_error(identity)
                log.warning("delivery.session_corrupt", attempt=attempt, error=str(e))
                await self._repair(identity)
            except TransientSendFailure as e:
                last_error = e
                log.warning("delivery.attempt_failed", attempt=attempt, error=str(e))
            except Exception as e:
                # Unclassified transport errors are retried like transient ones.
                last_error = e
                log.warning(
                    "delivery.attempt_failed",
                    attempt=attempt,
                    error=str(e) or type(e).__name__,
                )
            else:
                elapsed = time.monotonic() - started
                self.stats.record_sent(identity, elapsed)
                log.debug("delivery.sent", attempt=attempt, duration_ms=round(elapsed * 1000))
                return DeliveryReport(
                    identity=identity, ok=True, attempts=attempt, duration_seconds=elapsed
                )

            if attempt < self.max_retries:
                self.stats.retries += 1
                await asyncio.sleep(self.retry_delay * attempt)

        elapsed = time.monotonic() - started
        self.stats.record_failed(identity)
        error = str(last_error) or type(last_error).__name__
        log.error("delivery.failed", attempts=self.max_retries, error=error)
        return DeliveryReport(
            identity=identity,
            ok=False,
            attempts=self.max_retries,
            duration_seconds=elapsed,
            error=error,
        )

    async def _attempt(self, identity: str, payload: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(
                self.transport.send(identity, payload), timeout=self.message_timeout
            )
        except asyncio.TimeoutError as e:
            self.stats.timeouts += 1
            raise SendTimeout(
                identity, f"send timed out after {self.message_timeout}s"
            ) from e

    async def _repair(self, identity: str) -> None:
        try:
            await self.transport.repair_session(identity)
            logger.info("delivery.session_repaired", identity=identity)
        except Exception:
            logger.exception("delivery.session_repair_failed", identity=identity)
