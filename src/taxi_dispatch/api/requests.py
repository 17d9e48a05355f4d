"""Ride request API routes.

Learn: These routes are the HTTP interface to the request state machine.
DispatchService owns the sequencing (broadcast, timers, notifications);
routes translate HTTP to service calls and map errors:
- ValidationError → 422
- RequestNotFoundError → 404
- InvalidTransition → 409 (e.g. cancelling an ASSIGNED ride)

A request that reached no driver is still a 201: it was created, then
cancelled with reason "no drivers", and the response says so.
"""

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from taxi_dispatch.api.deps import get_dispatch
from taxi_dispatch.db.models import RequestStatus
from taxi_dispatch.errors import InvalidTransition, RequestNotFoundError, ValidationError
from taxi_dispatch.notifications.dispatcher import Coordinates
from taxi_dispatch.schemas.ride import (
    BroadcastRead,
    RideCancel,
    RideCreate,
    RideRead,
    TicketRead,
)
from taxi_dispatch.services.dispatch import DispatchService
from taxi_dispatch.services.request_store import RequestFilters

router = APIRouter()


@router.post("/requests", response_model=TicketRead, status_code=201)
async def create_request(body: RideCreate, dispatch: DispatchService = Depends(get_dispatch)):
    """Create a ride request and broadcast it to every active driver."""
    coordinates = None
    if body.coordinates:
        coordinates = Coordinates(**body.coordinates.model_dump())
    try:
        ticket = await dispatch.create_request(
            body.client_phone,
            body.client_name,
            location_text=body.location,
            coordinates=coordinates,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail={"field": e.field, "message": e.message})
    return TicketRead(
        request=RideRead.model_validate(ticket.request),
        broadcast=BroadcastRead.model_validate(ticket.broadcast),
        auto_cancelled=ticket.auto_cancelled,
    )


@router.get("/requests", response_model=list[RideRead])
async def list_requests(
    status: Optional[str] = Query(None, description="PENDING, ASSIGNED, COMPLETED, CANCELLED"),
    client_phone: Optional[str] = Query(None),
    driver_id: Optional[uuid.UUID] = Query(None),
    created_after: Optional[datetime] = Query(None),
    created_before: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    dispatch: DispatchService = Depends(get_dispatch),
):
    try:
        status_filter = RequestStatus(status.upper()) if status else None
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown status '{status}'")
    return await dispatch.store.list_requests(
        RequestFilters(
            status=status_filter,
            client_phone=client_phone,
            driver_id=driver_id,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            offset=offset,
        )
    )


@router.get("/requests/stats")
async def request_stats(dispatch: DispatchService = Depends(get_dispatch)):
    """Count of requests per status."""
    return await dispatch.store.request_stats()


@router.get("/requests/{request_id}", response_model=RideRead)
async def get_request(request_id: uuid.UUID, dispatch: DispatchService = Depends(get_dispatch)):
    try:
        return await dispatch.lifecycle.get(request_id)
    except RequestNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/requests/{request_id}/cancel", response_model=RideRead)
async def cancel_request(
    request_id: uuid.UUID,
    body: Optional[RideCancel] = None,
    dispatch: DispatchService = Depends(get_dispatch),
):
    """Cancel a pending request. Cancelling a finished request is a no-op."""
    reason = body.reason if body else "client"
    try:
        return await dispatch.cancel_request(request_id, reason)
    except RequestNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/requests/{request_id}/complete", response_model=RideRead)
async def complete_request(
    request_id: uuid.UUID, dispatch: DispatchService = Depends(get_dispatch)
):
    try:
        return await dispatch.complete_request(request_id)
    except RequestNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/requests/{request_id}/broadcast", response_model=BroadcastRead)
async def rebroadcast_request(
    request_id: uuid.UUID, dispatch: DispatchService = Depends(get_dispatch)
):
    """Notify active drivers again about a request that is still pending."""
    try:
        return await dispatch.broadcast(request_id)
    except RequestNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
