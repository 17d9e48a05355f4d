"""Driver API routes.

Learn: Routes translate HTTP into DriverService / DispatchService calls
and map service exceptions to status codes:
- ValidationError → 422, DuplicateDriverError → 409
- DriverNotFoundError → 404, DriverBusyError → 409

The accept route is the HTTP twin of a driver replying "1" in chat:
it runs the same first-writer-wins assignment.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from taxi_dispatch.api.deps import get_dispatch, get_drivers
from taxi_dispatch.errors import (
    DriverBusyError,
    DriverNotFoundError,
    DuplicateDriverError,
    ValidationError,
)
from taxi_dispatch.schemas.driver import DriverCreate, DriverLocation, DriverRead, DriverStatus
from taxi_dispatch.schemas.ride import AcceptRead, RideRead
from taxi_dispatch.services.assignment import AlreadyTaken, Assigned, NotEligible
from taxi_dispatch.services.dispatch import DispatchService
from taxi_dispatch.services.driver_service import DriverService

router = APIRouter()


@router.post("/drivers", response_model=DriverRead, status_code=201)
async def register_driver(body: DriverCreate, svc: DriverService = Depends(get_drivers)):
    """Register a new (active) driver."""
    try:
        return await svc.register(body.phone, body.name, body.plate, body.location)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail={"field": e.field, "message": e.message})
    except DuplicateDriverError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/drivers", response_model=list[DriverRead])
async def list_drivers(
    active: Optional[bool] = Query(True, description="Filter by availability; omit for all"),
    include_inactive: bool = Query(False, description="Return active and inactive drivers"),
    location: Optional[str] = Query(None, description="Substring match on location"),
    svc: DriverService = Depends(get_drivers),
):
    return await svc.list_drivers(active=None if include_inactive else active, location=location)


@router.get("/drivers/stats")
async def driver_stats(svc: DriverService = Depends(get_drivers)):
    return await svc.stats()


@router.get("/drivers/{phone}", response_model=DriverRead)
async def get_driver(phone: str, svc: DriverService = Depends(get_drivers)):
    try:
        return await svc.get(phone)
    except DriverNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/drivers/{phone}/status", response_model=DriverRead)
async def set_driver_status(
    phone: str, body: DriverStatus, svc: DriverService = Depends(get_drivers)
):
    """Activate or deactivate a driver (inactive drivers get no broadcasts)."""
    try:
        return await svc.set_active(phone, body.is_active)
    except DriverNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.patch("/drivers/{phone}/location", response_model=DriverRead)
async def update_driver_location(
    phone: str, body: DriverLocation, svc: DriverService = Depends(get_drivers)
):
    try:
        return await svc.update_location(phone, body.location)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail={"field": e.field, "message": e.message})
    except DriverNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/drivers/{phone}", status_code=204)
async def delete_driver(phone: str, svc: DriverService = Depends(get_drivers)):
    try:
        await svc.delete(phone)
    except DriverNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DriverBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/drivers/{phone}/accept", response_model=AcceptRead)
async def accept_ride(phone: str, dispatch: DispatchService = Depends(get_dispatch)):
    """Accept the oldest pending ride on behalf of a driver.

    Losing the race is a normal outcome (200, "already_taken").
    Unregistered or inactive drivers get 403.
    """
    outcome = await dispatch.try_accept(phone)
    if isinstance(outcome, Assigned):
        return AcceptRead(
            outcome="assigned", request=RideRead.model_validate(outcome.request)
        )
    if isinstance(outcome, AlreadyTaken):
        return AcceptRead(outcome="already_taken")
    if isinstance(outcome, NotEligible):
        raise HTTPException(status_code=403, detail=f"Driver is {outcome.reason}")
    raise HTTPException(status_code=500, detail="Unknown assignment outcome")
