"""FastAPI dependencies shared by the route modules.

Learn: The service graph is built once in the lifespan and stored on
app.state.services. Routes pull the piece they need through Depends(),
which also lets tests swap the whole graph by building their own app.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from taxi_dispatch.config import Settings
from taxi_dispatch.container import Services
from taxi_dispatch.services.dispatch import DispatchService
from taxi_dispatch.services.driver_service import DriverService


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return services


def get_settings(services: Services = Depends(get_services)) -> Settings:
    return services.settings


def get_dispatch(services: Services = Depends(get_services)) -> DispatchService:
    return services.dispatch


def get_drivers(services: Services = Depends(get_services)) -> DriverService:
    return services.drivers


async def require_api_key(
    x_api_key: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Reject requests without the shared x-api-key header (401)."""
    if not x_api_key or not hmac.compare_digest(x_api_key, settings.api_key):
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
