"""Notification dispatcher — fan a ride request out to every eligible driver.

Learn: Sending to 200 drivers at once would trip the gateway's rate
limits, and sending one by one is too slow for a 20-second accept
window. The dispatcher splits the difference:

    drivers → batches of N (N from the health monitor, clamped [4, 12])
    batches → groups of P batches (P = max_parallel_batches)

    for each group:
        all sends of all batches in the group run concurrently
        wait for the whole group
        sleep batch_delay (backpressure) unless it was the last group

Per-recipient retries happen inside ReliableSender, so one slow driver
delays only their own batch group. Failures are counted, never raised.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import structlog

from taxi_dispatch import messages
from taxi_dispatch.db.models import Driver, RideRequest
from taxi_dispatch.notifications.sender import DeliveryReport, ReliableSender
from taxi_dispatch.notifications.transport import MessagingTransport
from taxi_dispatch.services.request_store import RequestStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class Coordinates:
    """A single GPS fix shared by the client. Never persisted."""
    latitude: float
    longitude: float
    name: Optional[str] = None
    address: Optional[str] = None


@dataclass
class BroadcastResult:
    sent: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def reached_nobody(self) -> bool:
        return self.sent == 0

    def merge(self, other: "BroadcastResult") -> None:
        self.sent += other.sent
        self.failed += other.failed
        self.errors.extend(other.errors)

    def as_dict(self) -> dict:
        return {"sent": self.sent, "failed": self.failed, "errors": list(self.errors)}


def partition(items: Sequence, size: int) -> list[list]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class NotificationDispatcher:
    """Parallel, batched, throttled fan-out of ride notifications."""

    def __init__(
        self,
        store: RequestStore,
        transport: MessagingTransport,
        sender: ReliableSender,
        *,
        batch_size: int = 8,
        min_batch_size: int = 4,
        max_batch_size: int = 12,
        max_parallel_batches: int = 2,
        batch_delay: float = 1.2,
        location_pin_delay: float = 1.0,
        presence_delay: float = 0.5,
        parallel: bool = True,
        batch_size_hint: Optional[Callable[[], int]] = None,
    ):
        self.store = store
        self.transport = transport
        self.sender = sender
        self.batch_size = batch_size
        self.min_batch_size = min_batch_size
        self.max_batch_size = max_batch_size
        self.max_parallel_batches = max(1, max_parallel_batches)
        self.batch_delay = batch_delay
        self.location_pin_delay = location_pin_delay
        self.presence_delay = presence_delay
        self.parallel = parallel
        self.batch_size_hint = batch_size_hint

    def effective_batch_size(self) -> int:
        """Batch size for the next broadcast, consulting the health monitor."""
        size = self.batch_size
        if self.batch_size_hint is not None:
            try:
                size = self.batch_size_hint()
            except Exception:
                logger.exception("dispatch.batch_hint_failed")
        return max(self.min_batch_size, min(self.max_batch_size, size))

    # ─── Ride broadcast ───────────────────────────────────

    async def broadcast(
        self,
        request: RideRequest,
        exclude_phone: Optional[str] = None,
        coordinates: Optional[Coordinates] = None,
    ) -> BroadcastResult:
        """Notify every active driver (except `exclude_phone`) about `request`."""
        drivers = await self.store.list_drivers(active=True, exclude_phone=exclude_phone)
        log = logger.bind(request_id=str(request.id))

        if not drivers:
            log.warning("dispatch.no_active_drivers")
            return BroadcastResult(errors=["No active drivers available"])

        text = messages.driver_notification(request.client_name, request.display_location)

        async def notify(driver: Driver) -> DeliveryReport:
            return await self._notify_driver(driver, text, coordinates)

        if self.parallel:
            result = await self._fan_out(drivers, notify, request.id)
        else:
            result = await self._sequential(drivers, notify)

        log.info(
            "dispatch.broadcast_completed",
            drivers=len(drivers),
            sent=result.sent,
            failed=result.failed,
        )
        return result

    async def _notify_driver(
        self, driver: Driver, text: str, coordinates: Optional[Coordinates]
    ) -> DeliveryReport:
        if coordinates is not None:
            pin = await self.sender.send(
                driver.phone,
                {
                    "location": {
                        "latitude": coordinates.latitude,
                        "longitude": coordinates.longitude,
                        "name": coordinates.name or "Client location",
                        "address": coordinates.address or "",
                    }
                },
            )
            if not pin.ok:
                logger.warning(
                    "dispatch.location_pin_failed", driver_phone=driver.phone, error=pin.error
                )
            # the pin must land before the text that refers to it
            await asyncio.sleep(self.location_pin_delay)
        return await self.sender.send(driver.phone, {"text": text})

    async def _fan_out(
        self,
        drivers: list[Driver],
        notify: Callable,
        request_id: Optional[uuid.UUID] = None,
    ) -> BroadcastResult:
        batch_size = self.effective_batch_size()
        batches = partition(drivers, batch_size)
        groups = partition(batches, self.max_parallel_batches)
        total = BroadcastResult()

        logger.info(
            "dispatch.fan_out",
            request_id=str(request_id) if request_id else None,
            drivers=len(drivers),
            batch_size=batch_size,
            batches=len(batches),
            groups=len(groups),
        )

        for index, group in enumerate(groups):
            results = await asyncio.gather(
                *(self._run_batch(batch, notify) for batch in group)
            )
            for batch_result in results:
                total.merge(batch_result)

            if index < len(groups) - 1 and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        return total

    async def _run_batch(self, batch: list[Driver], notify: Callable) -> BroadcastResult:
        outcomes = await asyncio.gather(
            *(notify(driver) for driver in batch), return_exceptions=True
        )
        result = BroadcastResult()
        for driver, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                result.failed += 1
                result.errors.append(f"Error sending to {driver.name}: {outcome}")
            elif outcome.ok:
                result.sent += 1
            else:
                result.failed += 1
                result.errors.append(f"Error sending to {driver.name}: {outcome.error}")
        return result

    async def _sequential(self, drivers: list[Driver], notify: Callable) -> BroadcastResult:
        result = BroadcastResult()
        for driver in drivers:
            report = await notify(driver)
            if report.ok:
                result.sent += 1
            else:
                result.failed += 1
                result.errors.append(f"Error sending to {driver.name}: {report.error}")
        return result

    # ─── Follow-up notifications ──────────────────────────

    async def notify_taken(self, assigned_phone: str, driver_name: str) -> BroadcastResult:
        """Tell every other active driver the ride is gone."""
        drivers = await self.store.list_drivers(active=True, exclude_phone=assigned_phone)
        if not drivers:
            return BroadcastResult()
        text = messages.other_drivers_taken(driver_name)

        async def notify(driver: Driver) -> DeliveryReport:
            return await self.sender.send(driver.phone, {"text": text})

        return await self._fan_out(drivers, notify)

    async def send_to(self, identity: str, text: str, *, composing: bool = False) -> bool:
        """Send one text, optionally preceded by a "composing" presence."""
        if composing:
            try:
                await self.transport.presence_update(identity, "composing")
                await asyncio.sleep(self.presence_delay)
            except Exception as e:
                logger.debug("dispatch.presence_failed", identity=identity, error=str(e))
        report = await self.sender.send(identity, {"text": text})
        return report.ok

    async def notify_client_assigned(
        self, request: RideRequest, driver: Driver, eta_minutes: int
    ) -> bool:
        ok = await self.send_to(
            request.client_phone,
            messages.client_assigned(driver.name, driver.plate, driver.phone, eta_minutes),
            composing=True,
        )
        if ok:
            await self.send_to(request.client_phone, messages.CLIENT_CANCELLATION_AVAILABLE)
        return ok

    async def notify_driver_accepted(self, driver: Driver, request: RideRequest) -> bool:
        details = messages.driver_assigned_details(
            request.client_name, request.location, request.client_phone
        )
        return await self.send_to(driver.phone, f"{messages.DRIVER_ACCEPTED}\n\n{details}")

    async def notify_driver_too_late(self, driver_phone: str) -> bool:
        return await self.send_to(driver_phone, messages.DRIVER_TOO_LATE)

    async def notify_driver_inactive(self, driver_phone: str) -> bool:
        return await self.send_to(driver_phone, messages.DRIVER_INACTIVE)

    async def notify_no_drivers(self, client_phone: str) -> bool:
        return await self.send_to(client_phone, messages.NO_DRIVERS_AVAILABLE, composing=True)

    async def notify_timeout(self, client_phone: str) -> bool:
        return await self.send_to(
            client_phone,
            f"{messages.REQUEST_TIMEOUT}\n\n{messages.GREETING}\n\n{messages.MENU}",
            composing=True,
        )
