"""Dispatch service — the facade every entry point talks to.

Learn: The API routes, the inbound chat router and the background worker
never call the store, the coordinator or the notifier directly. They go
through DispatchService, which sequences one use case end to end:

create_request:
    geocode (optional) → create PENDING → broadcast to active drivers
    → nobody reached?  cancel "no drivers" + tell the requester once
    → otherwise        arm the 20s request timer + "searching" summary

try_accept:
    first-writer-wins assignment → on success disarm the requester's
    timer and notify driver, requester and the other drivers.

All follow-up notifications are best effort: a failed send is logged
by the sender and never turns a committed assignment into an error.
"""

import random
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Optional

import structlog

from taxi_dispatch import messages
from taxi_dispatch.config import Settings
from taxi_dispatch.conversation.fsm import (
    ConversationState,
    ConversationStore,
    DispatchEnded,
    DriverAssigned,
    RideCompleted,
    advance,
)
from taxi_dispatch.db.models import Driver, RequestStatus, RideRequest, utcnow
from taxi_dispatch.errors import DriverNotFoundError, InvalidTransition
from taxi_dispatch.events.types import (
    RIDE_ASSIGNED,
    RIDE_BROADCAST,
    RIDE_CANCELLED,
    RIDE_COMPLETED,
    RIDE_REQUESTED,
)
from taxi_dispatch.geocoding import FALLBACK_SECTOR, Geocoder
from taxi_dispatch.notifications.dispatcher import (
    BroadcastResult,
    Coordinates,
    NotificationDispatcher,
)
from taxi_dispatch.services.assignment import (
    AlreadyTaken,
    Assigned,
    AssignmentCoordinator,
    AssignmentOutcome,
    NotEligible,
)
from taxi_dispatch.services.lifecycle import RequestLifecycle
from taxi_dispatch.services.request_store import RequestFilters, RequestStore
from taxi_dispatch.supervisor.timeouts import SessionTimeoutSupervisor
from taxi_dispatch.validation import clean_phone

logger = structlog.get_logger()

Publisher = Callable[[str, dict], Awaitable[bool]]


@dataclass
class DispatchTicket:
    """What the requester's create call produced."""
    request: RideRequest
    broadcast: BroadcastResult
    auto_cancelled: bool = False


class DispatchService:
    def __init__(
        self,
        *,
        store: RequestStore,
        lifecycle: RequestLifecycle,
        assignment: AssignmentCoordinator,
        notifier: NotificationDispatcher,
        supervisor: SessionTimeoutSupervisor,
        settings: Settings,
        geocoder: Optional[Geocoder] = None,
        conversations: Optional[ConversationStore] = None,
        publish: Optional[Publisher] = None,
        eta_minutes: tuple[int, int] = (5, 12),
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.assignment = assignment
        self.notifier = notifier
        self.supervisor = supervisor
        self.settings = settings
        self.geocoder = geocoder
        self.conversations = conversations
        self.publish = publish
        self.eta_minutes = eta_minutes

    # ═══════════════════════════════════════════════════════════
    # Requester side
    # ═══════════════════════════════════════════════════════════

    async def create_request(
        self,
        client_phone: str,
        name: str,
        location_text: Optional[str] = None,
        coordinates: Optional[Coordinates] = None,
    ) -> DispatchTicket:
        """Create and broadcast a ride request.

        Raises:
            ValidationError: malformed phone, name or location
        """
        phone = clean_phone(client_phone, self.settings.country_code)

        sector = None
        if coordinates is not None:
            sector = await self._resolve_sector(coordinates)
        location = location_text or sector or ""

        request = await self.lifecycle.create_request(phone, name, location, sector)
        # a superseded request's timer must not cancel the new one
        self.supervisor.cancel_timer(request.client_phone)
        await self._publish(RIDE_REQUESTED, request)

        result = await self.notifier.broadcast(
            request, exclude_phone=request.client_phone, coordinates=coordinates
        )
        await self._publish(RIDE_BROADCAST, request, sent=result.sent, failed=result.failed)

        if result.sent == 0:
            cancelled = await self._cancel_unreached(request, result)
            request = await self.lifecycle.get(request.id)
            return DispatchTicket(request=request, broadcast=result, auto_cancelled=cancelled)

        self.supervisor.start_request_timer(request.client_phone, request.id)
        await self.notifier.send_to(
            request.client_phone,
            messages.searching_summary(result.sent, self.settings.request_timeout_seconds),
        )
        logger.info(
            "dispatch.request_broadcast",
            request_id=str(request.id),
            sent=result.sent,
            failed=result.failed,
        )
        return DispatchTicket(request=request, broadcast=result)

    async def _resolve_sector(self, coordinates: Coordinates) -> str:
        if self.geocoder is None:
            return FALLBACK_SECTOR
        return await self.geocoder.sector_for(coordinates.latitude, coordinates.longitude)

    async def _cancel_unreached(self, request: RideRequest, result: BroadcastResult) -> bool:
        """Nobody got the request: cancel it and tell the requester once."""
        cancelled = await self.lifecycle.cancel_if_pending(request.id, "no drivers")
        self.supervisor.cancel_timer(request.client_phone, request_id=request.id)
        if cancelled:
            await self.notifier.notify_no_drivers(request.client_phone)
            self._advance_conversation(request.client_phone, DispatchEnded("no drivers"))
            await self._publish(RIDE_CANCELLED, request, reason="no drivers")
        logger.warning(
            "dispatch.no_drivers_reached",
            request_id=str(request.id),
            failed=result.failed,
        )
        return cancelled

    async def cancel_request(self, request_id: uuid.UUID, reason: str = "client") -> RideRequest:
        """Cancel by id. Idempotent on terminal requests.

        Raises:
            RequestNotFoundError, InvalidTransition (request is ASSIGNED)
        """
        before = await self.lifecycle.get(request_id)
        request = await self.lifecycle.cancel(request_id, reason)
        if before.status == RequestStatus.PENDING.value:
            self.supervisor.cancel_timer(request.client_phone, request_id=request.id)
            await self._publish(RIDE_CANCELLED, request, reason=reason)
        return request

    async def cancel_client_pending(self, client_phone: str, reason: str = "client") -> bool:
        """Cancel the requester's current PENDING request and tell them."""
        phone = clean_phone(client_phone, self.settings.country_code)
        pending = await self.store.get_client_pending(phone)
        cancelled = False
        if pending is not None:
            cancelled = await self.lifecycle.cancel_if_pending(pending.id, reason)
            self.supervisor.cancel_timer(phone, request_id=pending.id)

        if cancelled:
            await self.notifier.send_to(phone, messages.REQUEST_CANCELLED)
            await self._publish(RIDE_CANCELLED, pending, reason=reason)
        else:
            await self.notifier.send_to(phone, messages.NO_PENDING_REQUEST)
        return cancelled

    async def client_status(
        self, client_phone: str
    ) -> tuple[Optional[RideRequest], Optional[Driver]]:
        """The requester's live ride: PENDING first, else the latest ASSIGNED.

        The driver is only returned for an ASSIGNED ride.
        """
        phone = clean_phone(client_phone, self.settings.country_code)
        pending = await self.store.get_client_pending(phone)
        if pending is not None:
            return pending, None
        assigned = await self.store.list_requests(
            RequestFilters(status=RequestStatus.ASSIGNED, client_phone=phone, limit=1)
        )
        if not assigned:
            return None, None
        ride = assigned[0]
        return ride, await self.store.get_driver(ride.assigned_driver_id)

    async def complete_request(self, request_id: uuid.UUID) -> RideRequest:
        """Raises RequestNotFoundError, InvalidTransition (not ASSIGNED)."""
        request = await self.lifecycle.complete(request_id)
        await self.notifier.send_to(request.client_phone, messages.RIDE_COMPLETED)
        self._advance_conversation(request.client_phone, RideCompleted())
        await self._publish(RIDE_COMPLETED, request)
        return request

    async def complete_for_driver(self, driver_phone: str) -> Optional[RideRequest]:
        """Complete the driver's oldest ASSIGNED ride. None if they have none.

        Raises:
            DriverNotFoundError: the phone is not a registered driver
        """
        phone = clean_phone(driver_phone, self.settings.country_code)
        driver = await self.store.get_driver_by_phone(phone)
        if driver is None:
            raise DriverNotFoundError(f"Driver {phone} not found")

        rides = await self.store.list_requests(
            RequestFilters(status=RequestStatus.ASSIGNED, driver_id=driver.id)
        )
        if not rides:
            return None
        oldest = rides[-1]
        return await self.complete_request(oldest.id)

    async def broadcast(self, request_id: uuid.UUID) -> BroadcastResult:
        """Re-broadcast a request that is still PENDING.

        Reaching nobody cancels it exactly like a fresh request would;
        otherwise the accept window starts over.
        """
        request = await self.lifecycle.get(request_id)
        if request.status != RequestStatus.PENDING.value:
            raise InvalidTransition(
                f"Only PENDING requests can be broadcast (request is {request.status})"
            )
        result = await self.notifier.broadcast(request, exclude_phone=request.client_phone)
        await self._publish(RIDE_BROADCAST, request, sent=result.sent, failed=result.failed)

        if result.sent == 0:
            await self._cancel_unreached(request, result)
        else:
            self.supervisor.start_request_timer(request.client_phone, request.id)
        return result

    # ═══════════════════════════════════════════════════════════
    # Driver side
    # ═══════════════════════════════════════════════════════════

    async def try_accept(self, driver_phone: str) -> AssignmentOutcome:
        phone = clean_phone(driver_phone, self.settings.country_code)
        outcome = await self.assignment.try_accept(phone)

        if isinstance(outcome, Assigned):
            request, driver = outcome.request, outcome.driver
            self.supervisor.cancel_timer(request.client_phone, request_id=request.id)
            self._advance_conversation(request.client_phone, DriverAssigned())

            await self.notifier.notify_driver_accepted(driver, request)
            await self.notifier.notify_client_assigned(
                request, driver, random.randint(*self.eta_minutes)
            )
            await self.notifier.notify_taken(driver.phone, driver.name)
            await self._publish(
                RIDE_ASSIGNED, request, driver_id=str(driver.id), driver_phone=driver.phone
            )
        elif isinstance(outcome, AlreadyTaken):
            await self.notifier.notify_driver_too_late(phone)
        elif isinstance(outcome, NotEligible) and outcome.reason == "inactive":
            await self.notifier.notify_driver_inactive(phone)

        return outcome

    # ═══════════════════════════════════════════════════════════
    # Timers and housekeeping
    # ═══════════════════════════════════════════════════════════

    def start_idle_timer(self, phone: str) -> None:
        self.supervisor.start_idle_timer(phone)

    async def reconcile_idle(self, phone: str) -> bool:
        return await self.supervisor.reconcile(phone)

    async def cleanup_expired(self) -> int:
        """Cancel PENDING requests older than request_timeout_minutes."""
        cutoff = utcnow() - timedelta(minutes=self.settings.request_timeout_minutes)
        expired = await self.store.list_expired_pending(cutoff)
        cancelled = 0
        for request_id in expired:
            if await self.lifecycle.cancel_if_pending(request_id, "expired"):
                cancelled += 1
        if cancelled:
            logger.info("dispatch.expired_cleaned", cancelled=cancelled)
        return cancelled

    async def stats(self) -> dict:
        return {
            "requests": await self.store.request_stats(),
            "drivers": await self.store.driver_stats(),
            "delivery": self.notifier.sender.stats.as_dict(),
            "active_request_timers": self.supervisor.active_timers,
        }

    # ─── Helpers ──────────────────────────────────────────

    def _advance_conversation(self, phone: str, event) -> None:
        if self.conversations is None or phone not in self.conversations:
            return
        conversation = self.conversations.get(phone)
        transition = advance(conversation.state, event)
        conversation.state = transition.next
        if transition.next == ConversationState.DONE:
            self.conversations.clear(phone)
        else:
            self.conversations.set(phone, conversation)

    async def _publish(self, event_type: str, request: RideRequest, **extra) -> None:
        if self.publish is None:
            return
        await self.publish(
            event_type,
            {
                "request_id": str(request.id),
                "client_phone": request.client_phone,
                "status": request.status,
                **extra,
            },
        )
