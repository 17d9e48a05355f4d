"""Assignment coordinator — first accept wins.

Learn: When several drivers reply "1" at the same moment, each call runs
in its own transaction:

1. Check the driver is registered and active (else NotEligible)
2. Re-read the request inside the transaction (FOR UPDATE on PostgreSQL)
3. If it is no longer PENDING → AlreadyTaken, nothing written
4. Otherwise compare-and-swap PENDING → ASSIGNED with the driver id

Step 4's WHERE status = 'PENDING' guard is what makes this safe at any
isolation level: the losers' UPDATE matches zero rows. Losing the race is
an expected outcome, so it is returned, never raised.
"""

import uuid
from dataclasses import dataclass
from typing import Optional, Union

import structlog
from sqlalchemy import select, update

from taxi_dispatch.db.models import Driver, RequestStatus, RideRequest
from taxi_dispatch.errors import RequestNotFoundError
from taxi_dispatch.events.store import EventStore, ride_stream
from taxi_dispatch.events.types import RIDE_ASSIGNED
from taxi_dispatch.services.request_store import RequestStore

logger = structlog.get_logger()


# ─── Outcomes ─────────────────────────────────────────────


@dataclass(frozen=True)
class Assigned:
    request: RideRequest
    driver: Driver


@dataclass(frozen=True)
class AlreadyTaken:
    request_id: Optional[uuid.UUID]


@dataclass(frozen=True)
class NotEligible:
    phone: str
    reason: str  # "unregistered" | "inactive"
    driver: Optional[Driver] = None


AssignmentOutcome = Union[Assigned, AlreadyTaken, NotEligible]


class AssignmentCoordinator:
    """Runs the transactional first-writer-wins assignment."""

    def __init__(self, store: RequestStore):
        self.store = store

    async def check_eligible(self, driver_phone: str) -> Union[Driver, NotEligible]:
        driver = await self.store.get_driver_by_phone(driver_phone)
        if not driver:
            return NotEligible(phone=driver_phone, reason="unregistered")
        if not driver.is_active:
            return NotEligible(phone=driver_phone, reason="inactive", driver=driver)
        return driver

    async def try_assign(
        self, request_id: uuid.UUID, driver_phone: str
    ) -> AssignmentOutcome:
        """Try to award `request_id` to the driver.

        Raises:
            RequestNotFoundError: if the request doesn't exist
        """
        log = logger.bind(request_id=str(request_id), driver_phone=driver_phone)

        driver = await self.check_eligible(driver_phone)
        if isinstance(driver, NotEligible):
            log.info("assignment.not_eligible", reason=driver.reason)
            return driver

        async with self.store.transaction() as db:
            result = await db.execute(
                select(RideRequest)
                .where(RideRequest.id == request_id)
                .with_for_update()
            )
            request = result.scalars().first()
            if request is None:
                raise RequestNotFoundError(f"Request {request_id} not found")

            if request.status != RequestStatus.PENDING.value:
                log.info("assignment.already_taken", status=request.status)
                return AlreadyTaken(request_id=request_id)

            swapped = await db.execute(
                update(RideRequest)
                .where(
                    RideRequest.id == request_id,
                    RideRequest.status == RequestStatus.PENDING.value,
                )
                .values(
                    status=RequestStatus.ASSIGNED.value,
                    assigned_driver_id=driver.id,
                )
                .execution_options(synchronize_session=False)
            )
            if swapped.rowcount != 1:
                log.info("assignment.already_taken", status="raced")
                return AlreadyTaken(request_id=request_id)

            await EventStore(db).append(
                stream_id=ride_stream(request_id),
                event_type=RIDE_ASSIGNED,
                data={
                    "from": RequestStatus.PENDING.value,
                    "to": RequestStatus.ASSIGNED.value,
                    "driver_id": str(driver.id),
                    "driver_phone": driver.phone,
                },
            )
            request = await db.get(RideRequest, request_id, populate_existing=True)

        log.info("assignment.assigned", driver_id=str(driver.id))
        return Assigned(request=request, driver=driver)

    async def try_accept(self, driver_phone: str) -> AssignmentOutcome:
        """Resolve a bare accept signal to the oldest PENDING request.

        The accept message does not name a request, so a driver answering
        a notification for request A may be awarded an older request B
        that is still pending. FIFO by created_at.
        """
        driver = await self.check_eligible(driver_phone)
        if isinstance(driver, NotEligible):
            logger.info(
                "assignment.not_eligible", driver_phone=driver_phone, reason=driver.reason
            )
            return driver

        oldest = await self.store.get_oldest_pending()
        if oldest is None:
            logger.info("assignment.nothing_pending", driver_phone=driver_phone)
            return AlreadyTaken(request_id=None)

        try:
            return await self.try_assign(oldest.id, driver_phone)
        except RequestNotFoundError:
            return AlreadyTaken(request_id=oldest.id)
