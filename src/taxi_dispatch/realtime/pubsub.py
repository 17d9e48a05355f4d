"""Redis pub/sub — ride lifecycle events for dashboards and other services.

Learn: Redis pub/sub is fire-and-forget. If no one is listening the message
is lost, which is fine: the audit log in the database is the durable
record and dashboards can always query the API to catch up.

Redis is optional. When it was never initialized (or is unreachable),
`publish_ride_event` logs and returns; dispatching never depends on it.

Channel: taxi:events:rides
"""

import json
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog

from taxi_dispatch.config import settings

logger = structlog.get_logger()

RIDES_CHANNEL = "taxi:events:rides"

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis(url: Optional[str] = None) -> aioredis.Redis:
    """Initialize the Redis connection pool and verify it answers."""
    global _redis
    client = aioredis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    await client.ping()
    _redis = client
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis:
        await _redis.close()
        _redis = None


def get_redis() -> Optional[aioredis.Redis]:
    return _redis


async def publish_ride_event(event_type: str, data: dict[str, Any]) -> bool:
    """Publish one ride event. Returns False when nothing was published."""
    r = get_redis()
    if r is None:
        return False
    payload = json.dumps({"type": event_type, **data}, default=str)
    try:
        await r.publish(RIDES_CHANNEL, payload)
    except aioredis.RedisError as e:
        logger.warning("realtime.publish_failed", event_type=event_type, error=str(e))
        return False
    return True
