"""Request store — persistence of ride requests and drivers.

Learn: This is the leaf of the dispatch core. Every method opens its own
session from the injected factory, so concurrent callers (two drivers
accepting at once) never share a transaction.

Status changes go through `transition()`, a compare-and-swap:

    UPDATE ride_requests SET status = :to
    WHERE id = :id AND status IN (:from...)

If another writer moved the row first, the guard matches zero rows and
the caller gets None back — nothing is overwritten. The audit event is
appended in the same transaction as the update.
"""

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxi_dispatch.db.models import Driver, RequestStatus, RideRequest
from taxi_dispatch.errors import DriverBusyError, DuplicateDriverError
from taxi_dispatch.events.store import EventStore, driver_stream, ride_stream
from taxi_dispatch.events.types import (
    DRIVER_DELETED,
    DRIVER_REGISTERED,
    RIDE_CANCELLED,
    RIDE_REQUESTED,
)


@dataclass
class RequestFilters:
    status: Optional[RequestStatus] = None
    client_phone: Optional[str] = None
    driver_id: Optional[uuid.UUID] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    limit: int = 100
    offset: int = 0


class RequestStore:
    """Ride request + driver persistence over an async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside BEGIN ... COMMIT (rollback on error)."""
        async with self.session_factory() as db:
            async with db.begin():
                yield db

    # ─── Ride requests ───────────────────────────────────

    async def create_request(
        self,
        *,
        client_phone: str,
        client_name: str,
        location: str,
        sector: Optional[str] = None,
        supersede_reason: str = "superseded by a new request",
    ) -> tuple[RideRequest, list[uuid.UUID]]:
        """Insert a PENDING request, cancelling the client's prior PENDING ones.

        Both happen in one transaction. Returns the new request and the
        ids of the requests it superseded.
        """
        async with self.transaction() as db:
            events = EventStore(db)
            result = await db.execute(
                select(RideRequest.id).where(
                    RideRequest.client_phone == client_phone,
                    RideRequest.status == RequestStatus.PENDING.value,
                )
            )
            superseded = []
            for prior_id in result.scalars().all():
                moved = await self._cas(
                    db,
                    prior_id,
                    [RequestStatus.PENDING],
                    RequestStatus.CANCELLED,
                    cancel_reason=supersede_reason,
                )
                if moved:
                    superseded.append(prior_id)
                    await events.append(
                        stream_id=ride_stream(prior_id),
                        event_type=RIDE_CANCELLED,
                        data={"from": "PENDING", "reason": supersede_reason},
                    )

            request = RideRequest(
                client_phone=client_phone,
                client_name=client_name,
                location=location,
                sector=sector,
                status=RequestStatus.PENDING.value,
            )
            db.add(request)
            await db.flush()

            await events.append(
                stream_id=ride_stream(request.id),
                event_type=RIDE_REQUESTED,
                data={
                    "client_phone": client_phone,
                    "location": location,
                    "sector": sector,
                    "superseded": [str(s) for s in superseded],
                },
            )
        return request, superseded

    async def get_request(self, request_id: uuid.UUID) -> Optional[RideRequest]:
        async with self.session_factory() as db:
            return await db.get(RideRequest, request_id)

    async def get_client_pending(self, client_phone: str) -> Optional[RideRequest]:
        """Most recent PENDING request of a client, if any."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(RideRequest)
                .where(
                    RideRequest.client_phone == client_phone,
                    RideRequest.status == RequestStatus.PENDING.value,
                )
                .order_by(RideRequest.created_at.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def get_oldest_pending(self) -> Optional[RideRequest]:
        """The globally oldest PENDING request (FIFO accept order)."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(RideRequest)
                .where(RideRequest.status == RequestStatus.PENDING.value)
                .order_by(RideRequest.created_at.asc())
                .limit(1)
            )
            return result.scalars().first()

    async def list_requests(self, filters: Optional[RequestFilters] = None) -> list[RideRequest]:
        """List requests with optional filters, newest first.

        Learn: Query filters are applied conditionally — only when the
        caller provides them.
        """
        filters = filters or RequestFilters()
        query = (
            select(RideRequest)
            .order_by(RideRequest.created_at.desc())
            .limit(filters.limit)
            .offset(filters.offset)
        )
        if filters.status:
            query = query.where(RideRequest.status == RequestStatus(filters.status).value)
        if filters.client_phone:
            query = query.where(RideRequest.client_phone == filters.client_phone)
        if filters.driver_id:
            query = query.where(RideRequest.assigned_driver_id == filters.driver_id)
        if filters.created_after:
            query = query.where(RideRequest.created_at >= filters.created_after)
        if filters.created_before:
            query = query.where(RideRequest.created_at <= filters.created_before)

        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def transition(
        self,
        request_id: uuid.UUID,
        from_statuses: Iterable[RequestStatus],
        to_status: RequestStatus,
        *,
        event_type: str,
        event_data: Optional[dict] = None,
        **values,
    ) -> Optional[RideRequest]:
        """Compare-and-swap a request's status.

        Returns the updated request, or None when the request was not in
        one of `from_statuses` (someone else got there first).
        """
        from_statuses = list(from_statuses)
        async with self.transaction() as db:
            moved = await self._cas(db, request_id, from_statuses, to_status, **values)
            if not moved:
                return None
            await EventStore(db).append(
                stream_id=ride_stream(request_id),
                event_type=event_type,
                data={
                    "from": [s.value for s in from_statuses],
                    "to": to_status.value,
                    **(event_data or {}),
                },
            )
            request = await db.get(RideRequest, request_id, populate_existing=True)
        return request

    async def _cas(
        self,
        db: AsyncSession,
        request_id: uuid.UUID,
        from_statuses: list[RequestStatus],
        to_status: RequestStatus,
        **values,
    ) -> bool:
        result = await db.execute(
            update(RideRequest)
            .where(
                RideRequest.id == request_id,
                RideRequest.status.in_([s.value for s in from_statuses]),
            )
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_expired_pending(self, older_than: datetime) -> list[uuid.UUID]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(RideRequest.id).where(
                    RideRequest.status == RequestStatus.PENDING.value,
                    RideRequest.created_at < older_than,
                )
            )
            return list(result.scalars().all())

    async def request_stats(self) -> dict[str, int]:
        """Count of requests per status (every status present, zero-filled)."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(RideRequest.status, func.count()).group_by(RideRequest.status)
            )
            counts = {status.value: 0 for status in RequestStatus}
            for status, count in result.all():
                counts[status] = count
        counts["TOTAL"] = sum(counts.values())
        return counts

    # ─── Drivers ─────────────────────────────────────────

    async def create_driver(
        self,
        *,
        phone: str,
        name: str,
        plate: str,
        location: Optional[str] = None,
    ) -> Driver:
        driver = Driver(
            phone=phone, name=name, plate=plate, location=location, is_active=True
        )
        try:
            async with self.transaction() as db:
                db.add(driver)
                await db.flush()
                await EventStore(db).append(
                    stream_id=driver_stream(phone),
                    event_type=DRIVER_REGISTERED,
                    data={"driver_id": str(driver.id), "name": name, "plate": plate},
                )
        except IntegrityError as e:
            raise DuplicateDriverError(
                f"A driver with phone {phone} is already registered"
            ) from e
        return driver

    async def get_driver_by_phone(self, phone: str) -> Optional[Driver]:
        async with self.session_factory() as db:
            result = await db.execute(select(Driver).where(Driver.phone == phone))
            return result.scalars().first()

    async def get_driver(self, driver_id: uuid.UUID) -> Optional[Driver]:
        async with self.session_factory() as db:
            return await db.get(Driver, driver_id)

    async def list_drivers(
        self,
        *,
        active: Optional[bool] = True,
        exclude_phone: Optional[str] = None,
        location: Optional[str] = None,
    ) -> list[Driver]:
        query = select(Driver).order_by(Driver.created_at.desc())
        if active is not None:
            query = query.where(Driver.is_active.is_(active))
        if exclude_phone:
            query = query.where(Driver.phone != exclude_phone)
        if location:
            query = query.where(Driver.location.ilike(f"%{location}%"))

        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def update_driver(
        self,
        phone: str,
        *,
        event_type: str,
        **fields,
    ) -> Optional[Driver]:
        """Single-row driver update (status, location). No cross-row coordination."""
        async with self.transaction() as db:
            result = await db.execute(select(Driver).where(Driver.phone == phone))
            driver = result.scalars().first()
            if not driver:
                return None
            for key, value in fields.items():
                setattr(driver, key, value)
            await EventStore(db).append(
                stream_id=driver_stream(phone),
                event_type=event_type,
                data={k: v for k, v in fields.items()},
            )
        return driver

    async def delete_driver(self, phone: str) -> bool:
        """Delete a driver. Refuses while they own an ASSIGNED ride.

        Completed rides keep their assigned_driver_id, so a driver with
        ride history cannot be deleted either; deactivate them instead.
        """
        try:
            async with self.transaction() as db:
                result = await db.execute(select(Driver).where(Driver.phone == phone))
                driver = result.scalars().first()
                if not driver:
                    return False

                active_rides = await db.scalar(
                    select(func.count())
                    .select_from(RideRequest)
                    .where(
                        RideRequest.assigned_driver_id == driver.id,
                        RideRequest.status == RequestStatus.ASSIGNED.value,
                    )
                )
                if active_rides:
                    raise DriverBusyError(
                        f"Driver {phone} has {active_rides} assigned ride(s)"
                    )

                await db.delete(driver)
                await EventStore(db).append(
                    stream_id=driver_stream(phone),
                    event_type=DRIVER_DELETED,
                    data={"driver_id": str(driver.id)},
                )
        except IntegrityError as e:
            raise DriverBusyError(
                f"Driver {phone} has ride history; deactivate instead"
            ) from e
        return True

    async def driver_stats(self) -> dict[str, int]:
        async with self.session_factory() as db:
            total = await db.scalar(select(func.count()).select_from(Driver))
            active = await db.scalar(
                select(func.count()).select_from(Driver).where(Driver.is_active.is_(True))
            )
        return {
            "total_drivers": total or 0,
            "active_drivers": active or 0,
            "inactive_drivers": (total or 0) - (active or 0),
        }
