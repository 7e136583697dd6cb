# src/storage/alerts_repo.py
from __future__ import annotations

from typing import Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from pricewatch.alerts.models import AlertDefinition, validate_threshold, validate_window
from pricewatch.utils.time import utc_now_s
from storage import keys

log = structlog.get_logger("alerts_repo")


class RedisAlertRepository:
    """
    Alert definitions as hashes (alert:{id}) plus two set indexes:
      - alerts:active          ids the evaluator should look at
      - alerts:user:{user_id}  ids owned by a user

    Each mutation is one MULTI/EXEC pipeline so the hash and its indexes
    change together; reads never need a lock. update() WATCHes the hash so
    a delete racing with it cannot bring the alert back.
    """

    def __init__(self, redis: Redis, max_update_attempts: int = 3):
        self.redis = redis
        self.max_update_attempts = max_update_attempts

    async def create(
        self,
        user_id: int,
        asset_id: str,
        threshold_pct: float,
        window_minutes: int,
        is_active: bool = True,
    ) -> AlertDefinition:
        asset_id = (asset_id or "").strip()
        if not asset_id:
            raise ValueError("asset id must be non-empty")
        threshold_pct = validate_threshold(threshold_pct)
        window_minutes = validate_window(window_minutes)

        alert_id = int(await self.redis.incr(keys.ALERT_SEQ))
        now = utc_now_s()
        alert = AlertDefinition(
            id=alert_id,
            user_id=int(user_id),
            asset_id=asset_id,
            threshold_pct=threshold_pct,
            window_minutes=window_minutes,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(keys.alert(alert_id), mapping=alert.to_hash())
            pipe.sadd(keys.user_alerts(alert.user_id), alert_id)
            if is_active:
                pipe.sadd(keys.ACTIVE_ALERTS, alert_id)
            await pipe.execute()

        log.info(
            "alert_created",
            alert_id=alert_id, user_id=alert.user_id, asset=asset_id,
            threshold_pct=threshold_pct, window_minutes=window_minutes,
        )
        return alert

    async def get(self, alert_id: int) -> Optional[AlertDefinition]:
        h = await self.redis.hgetall(keys.alert(alert_id))
        return AlertDefinition.from_hash(h) if h else None

    async def _load_many(self, ids) -> list[AlertDefinition]:
        ordered = sorted(int(i) for i in ids)
        if not ordered:
            return []
        async with self.redis.pipeline(transaction=False) as pipe:
            for alert_id in ordered:
                pipe.hgetall(keys.alert(alert_id))
            rows = await pipe.execute()
        # a row can vanish between SMEMBERS and HGETALL (concurrent delete)
        return [AlertDefinition.from_hash(h) for h in rows if h]

    async def list_for_user(self, user_id: int) -> list[AlertDefinition]:
        ids = await self.redis.smembers(keys.user_alerts(user_id))
        alerts = await self._load_many(ids)
        alerts.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return alerts

    async def get_all_active(self) -> list[AlertDefinition]:
        ids = await self.redis.smembers(keys.ACTIVE_ALERTS)
        return [a for a in await self._load_many(ids) if a.is_active]

    async def update(
        self,
        alert_id: int,
        *,
        threshold_pct: Optional[float] = None,
        window_minutes: Optional[int] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[AlertDefinition]:
        """
        Apply the given changes under WATCH alert:{id}. Returns None when the
        alert does not exist or was deleted while the update was in flight.
        """
        if threshold_pct is not None:
            threshold_pct = validate_threshold(threshold_pct)
        if window_minutes is not None:
            window_minutes = validate_window(window_minutes)

        key = keys.alert(alert_id)
        for _ in range(self.max_update_attempts):
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                h = await pipe.hgetall(key)
                if not h:
                    return None
                alert = AlertDefinition.from_hash(h)
                if threshold_pct is not None:
                    alert.threshold_pct = threshold_pct
                if window_minutes is not None:
                    alert.window_minutes = window_minutes
                if is_active is not None:
                    alert.is_active = bool(is_active)
                alert.updated_at = utc_now_s()

                pipe.multi()
                pipe.hset(key, mapping=alert.to_hash())
                if alert.is_active:
                    pipe.sadd(keys.ACTIVE_ALERTS, alert_id)
                else:
                    pipe.srem(keys.ACTIVE_ALERTS, alert_id)
                try:
                    await pipe.execute()
                except WatchError:
                    log.debug("alert_update_retry", alert_id=alert_id)
                    continue

            log.info(
                "alert_updated",
                alert_id=alert_id, threshold_pct=alert.threshold_pct,
                window_minutes=alert.window_minutes, is_active=alert.is_active,
            )
            return alert

        log.warning("alert_update_conflict", alert_id=alert_id, attempts=self.max_update_attempts)
        return None

    async def delete(self, alert_id: int) -> bool:
        """Delete the alert and its trigger log (cascade)."""
        alert = await self.get(alert_id)
        if alert is None:
            return False

        log_ids = await self.redis.zrange(keys.alert_logs_index(alert_id), 0, -1)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(keys.alert(alert_id))
            pipe.srem(keys.ACTIVE_ALERTS, alert_id)
            pipe.srem(keys.user_alerts(alert.user_id), alert_id)
            pipe.delete(keys.alert_logs_index(alert_id))
            if log_ids:
                pipe.delete(*(keys.alert_log(int(i)) for i in log_ids))
            await pipe.execute()

        log.info("alert_deleted", alert_id=alert_id, logs_removed=len(log_ids))
        return True
