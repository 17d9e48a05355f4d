"""Dispatch API — operational view of the dispatch core.

Learn: One endpoint for the operator dashboard:
- Requests per status, active/inactive drivers
- Delivery statistics (sent, failed, retries, session repairs, latency)
- Active request timers and the current broadcast batch size
- The timeline (audit events) of one ride
"""

import uuid

from fastapi import APIRouter, Depends

from taxi_dispatch.api.deps import get_services
from taxi_dispatch.container import Services
from taxi_dispatch.events.store import EventStore, ride_stream

router = APIRouter()


@router.get("/dispatch/stats")
async def get_dispatch_stats(services: Services = Depends(get_services)):
    stats = await services.dispatch.stats()
    stats["batch_size_hint"] = services.health.current_batch_size_hint()
    stats["conversations"] = len(services.conversations)
    return stats


@router.get("/dispatch/requests/{request_id}/events")
async def get_ride_events(request_id: uuid.UUID, services: Services = Depends(get_services)):
    """Audit trail of one ride, oldest first."""
    async with services.store.session_factory() as db:
        events = await EventStore(db).read_stream(ride_stream(request_id))
    return [
        {
            "id": e.id,
            "type": e.type,
            "data": e.data,
            "created_at": e.created_at.isoformat(),
        }
        for e in events
    ]
