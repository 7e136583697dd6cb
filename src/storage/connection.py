# src/storage/connection.py
from __future__ import annotations

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

log = structlog.get_logger("storage")


class StoreUnavailable(RuntimeError):
    """Persistent store could not be reached at startup."""


async def connect(url: str) -> Redis:
    """
    Open the shared client and PING it once. Failing here is fatal for the
    process: nothing starts without the store.
    """
    r = Redis.from_url(url, decode_responses=True)
    try:
        await r.ping()
    except (RedisError, OSError) as e:
        await r.aclose()
        raise StoreUnavailable(f"cannot reach redis: {e}") from e
    log.info("redis_connected")
    return r


async def is_reachable(r: Redis) -> bool:
    try:
        return bool(await r.ping())
    except (RedisError, OSError) as e:
        log.warning("redis_ping_failed", err=str(e))
        return False
