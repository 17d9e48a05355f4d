"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Auth is applied at the include_router level using FastAPI's
dependencies parameter. This protects all routes in each router
without modifying individual handlers. Only health is open, so load
balancers can check it without the key.
"""

from fastapi import APIRouter, Depends

from taxi_dispatch.api.deps import require_api_key
from taxi_dispatch.api.dispatch import router as dispatch_router
from taxi_dispatch.api.drivers import router as drivers_router
from taxi_dispatch.api.health import router as health_router
from taxi_dispatch.api.inbound import router as inbound_router
from taxi_dispatch.api.requests import router as requests_router

# All protected routers require the shared x-api-key header
_auth = [Depends(require_api_key)]

api_router = APIRouter(prefix="/api/v1")

# Open routes
api_router.include_router(health_router, tags=["health"])

# Protected routes
api_router.include_router(drivers_router, tags=["drivers"], dependencies=_auth)
api_router.include_router(requests_router, tags=["requests"], dependencies=_auth)
api_router.include_router(inbound_router, tags=["inbound"], dependencies=_auth)
api_router.include_router(dispatch_router, tags=["dispatch"], dependencies=_auth)
