"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running and its
dependencies are reachable: the database, Redis (optional, reported but
never fails the check) and the messaging transport. The health monitor's
latest snapshot (resources, batch size hint) is included for operators.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import text

from taxi_dispatch import __version__
from taxi_dispatch.api.deps import get_services
from taxi_dispatch.container import Services
from taxi_dispatch.realtime.pubsub import get_redis

router = APIRouter()


@router.get("/health")
async def health_check(services: Services = Depends(get_services)):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    try:
        async with services.store.session_factory() as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {e}"

    try:
        connected = await services.transport.is_connected()
        checks["transport"] = "ok" if connected else "disconnected"
    except Exception as e:
        checks["transport"] = f"error: {e}"

    r = get_redis()
    if r is None:
        redis_status = "disabled"
    else:
        try:
            await r.ping()
            redis_status = "ok"
        except Exception as e:
            redis_status = f"error: {e}"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {
        "status": status,
        **checks,
        "redis": redis_status,
        "monitor": services.health.snapshot(),
    }
