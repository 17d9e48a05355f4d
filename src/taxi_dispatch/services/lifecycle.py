"""Ride request lifecycle — the request state machine.

Learn: Every status change is:
1. Validated against VALID_TRANSITIONS (no moving backwards)
2. Applied with a compare-and-swap in the request store
3. Recorded as an immutable event (audit trail)

The state machine:
  PENDING → ASSIGNED → COMPLETED
  PENDING → CANCELLED

ASSIGNED is only ever entered through the AssignmentCoordinator; this
service owns creation, cancellation and completion.
"""

import uuid
from typing import Optional

import structlog

from taxi_dispatch.db.models import TERMINAL_STATUSES, RequestStatus, RideRequest
from taxi_dispatch.errors import InvalidTransition, RequestNotFoundError
from taxi_dispatch.events.types import RIDE_CANCELLED, RIDE_COMPLETED
from taxi_dispatch.services.request_store import RequestStore
from taxi_dispatch.validation import validate_location, validate_name, validate_phone

logger = structlog.get_logger()


# ═══════════════════════════════════════════════════════════
# State Machine
# ═══════════════════════════════════════════════════════════

VALID_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    RequestStatus.PENDING: {RequestStatus.ASSIGNED, RequestStatus.CANCELLED},
    RequestStatus.ASSIGNED: {RequestStatus.COMPLETED},
    RequestStatus.COMPLETED: set(),  # terminal state
    RequestStatus.CANCELLED: set(),  # terminal state
}


def can_transition(current: RequestStatus, new: RequestStatus) -> bool:
    return new in VALID_TRANSITIONS.get(current, set())


def _sources_for(target: RequestStatus) -> list[RequestStatus]:
    return [s for s, allowed in VALID_TRANSITIONS.items() if target in allowed]


# ═══════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════


class RequestLifecycle:
    """Create, cancel and complete ride requests."""

    def __init__(self, store: RequestStore, country_code: str = "57"):
        self.store = store
        self.country_code = country_code

    async def create_request(
        self,
        client_phone: str,
        name: str,
        location: str,
        sector: Optional[str] = None,
    ) -> RideRequest:
        """Create a PENDING request, superseding the client's previous one.

        Raises:
            ValidationError: on a malformed name, phone or location
        """
        phone = validate_phone(client_phone, self.country_code)
        name = validate_name(name)
        location = validate_location(location)

        request, superseded = await self.store.create_request(
            client_phone=phone,
            client_name=name,
            location=location,
            sector=sector,
        )
        logger.info(
            "ride.created",
            request_id=str(request.id),
            client_phone=phone,
            sector=sector,
            superseded=[str(s) for s in superseded],
        )
        return request

    async def get(self, request_id: uuid.UUID) -> RideRequest:
        request = await self.store.get_request(request_id)
        if not request:
            raise RequestNotFoundError(f"Request {request_id} not found")
        return request

    async def cancel(self, request_id: uuid.UUID, reason: str = "") -> RideRequest:
        """Cancel a PENDING request.

        Idempotent: cancelling a terminal request is a no-op that returns
        the request unchanged. Only ASSIGNED requests refuse.

        Raises:
            RequestNotFoundError: if the request doesn't exist
            InvalidTransition: if the request is ASSIGNED
        """
        updated = await self.store.transition(
            request_id,
            _sources_for(RequestStatus.CANCELLED),
            RequestStatus.CANCELLED,
            event_type=RIDE_CANCELLED,
            event_data={"reason": reason},
            cancel_reason=reason or None,
        )
        if updated:
            logger.info("ride.cancelled", request_id=str(request_id), reason=reason)
            return updated

        current = await self.get(request_id)
        status = RequestStatus(current.status)
        if status in TERMINAL_STATUSES:
            logger.debug(
                "ride.cancel_noop", request_id=str(request_id), status=status.value
            )
            return current
        raise InvalidTransition(
            f"Cannot transition from '{status.value}' to 'CANCELLED'. "
            f"Allowed: {sorted(s.value for s in VALID_TRANSITIONS[status]) or 'none (terminal state)'}"
        )

    async def cancel_if_pending(self, request_id: uuid.UUID, reason: str) -> bool:
        """Cancel only if still PENDING. True when THIS call cancelled it."""
        updated = await self.store.transition(
            request_id,
            [RequestStatus.PENDING],
            RequestStatus.CANCELLED,
            event_type=RIDE_CANCELLED,
            event_data={"reason": reason},
            cancel_reason=reason,
        )
        if updated:
            logger.info("ride.cancelled", request_id=str(request_id), reason=reason)
        return updated is not None

    async def complete(self, request_id: uuid.UUID) -> RideRequest:
        """Mark an ASSIGNED request COMPLETED.

        Raises:
            RequestNotFoundError: if the request doesn't exist
            InvalidTransition: from any status other than ASSIGNED
        """
        updated = await self.store.transition(
            request_id,
            _sources_for(RequestStatus.COMPLETED),
            RequestStatus.COMPLETED,
            event_type=RIDE_COMPLETED,
        )
        if updated:
            logger.info("ride.completed", request_id=str(request_id))
            return updated

        current = await self.get(request_id)
        raise InvalidTransition(
            f"Cannot transition from '{current.status}' to 'COMPLETED'. "
            "Only ASSIGNED rides can be completed."
        )
