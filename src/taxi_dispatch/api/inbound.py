"""Inbound webhook — messages forwarded by the messaging gateway.

Learn: The gateway holds the chat connection and POSTs every message it
receives here (sender phone, text, optional GPS pin). The InboundRouter
decides whether it is a driver command or a step of the requester
conversation, and sends all replies through the outbound transport.
The HTTP response only summarizes what happened, for gateway logs.
"""

from fastapi import APIRouter, Depends, HTTPException

from taxi_dispatch.api.deps import get_services
from taxi_dispatch.container import Services
from taxi_dispatch.errors import DriverNotFoundError
from taxi_dispatch.notifications.dispatcher import Coordinates
from taxi_dispatch.schemas.driver import InboundMessage, InboundRead

router = APIRouter()


@router.post("/inbound", response_model=InboundRead)
async def receive_message(body: InboundMessage, services: Services = Depends(get_services)):
    coordinates = None
    if body.coordinates:
        coordinates = Coordinates(**body.coordinates.model_dump())
    try:
        result = await services.router.handle(body.phone, body.text, coordinates)
    except DriverNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return InboundRead(
        role=result.role,
        action=result.action,
        state=result.state.value if result.state else None,
        replies=result.replies,
    )
