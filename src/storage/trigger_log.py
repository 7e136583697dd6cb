# src/storage/trigger_log.py
from __future__ import annotations

from typing import Optional

import structlog
from redis.asyncio import Redis

from pricewatch.alerts.models import TriggerLogEntry
from pricewatch.utils.time import minutes_before, utc_now_s
from storage import keys

log = structlog.get_logger("trigger_log")


class RedisTriggerLog:
    """
    One entry per firing: alertlog:{id} hash, indexed per alert in
    alertlogs:{alert_id} (score = triggered_at). The index is what the
    cooldown check counts, so both are written in one MULTI/EXEC.
    """

    def __init__(self, redis: Redis):
        self.redis = redis

    async def create(self, entry: TriggerLogEntry) -> TriggerLogEntry:
        entry.id = int(await self.redis.incr(keys.ALERTLOG_SEQ))
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(keys.alert_log(entry.id), mapping=entry.to_hash())
            pipe.zadd(keys.alert_logs_index(entry.alert_id), {str(entry.id): entry.triggered_at})
            await pipe.execute()
        return entry

    async def mark_delivered(self, log_id: int) -> bool:
        key = keys.alert_log(log_id)
        if not await self.redis.exists(key):
            return False
        await self.redis.hset(key, "delivered", "1")
        return True

    async def get(self, log_id: int) -> Optional[TriggerLogEntry]:
        h = await self.redis.hgetall(keys.alert_log(log_id))
        return TriggerLogEntry.from_hash(h) if h else None

    async def count_since(self, alert_id: int, since: float) -> int:
        """Number of firings with triggered_at >= since."""
        return int(await self.redis.zcount(keys.alert_logs_index(alert_id), since, "+inf"))

    async def recent(self, alert_id: int, minutes: float, now: Optional[float] = None) -> list[TriggerLogEntry]:
        """Entries from the last `minutes`, newest first."""
        now = utc_now_s() if now is None else now
        ids = await self.redis.zrangebyscore(
            keys.alert_logs_index(alert_id), minutes_before(now, minutes), "+inf"
        )
        out: list[TriggerLogEntry] = []
        for log_id in reversed(ids):
            entry = await self.get(int(log_id))
            if entry is not None:
                out.append(entry)
        return out
