# src/storage/price_history.py
from __future__ import annotations

import math
from typing import Optional

import structlog
from redis.asyncio import Redis

from pricewatch.alerts.models import PriceSample
from pricewatch.utils.time import epoch_ms, from_ms, minutes_before, utc_now_s
from storage import keys

log = structlog.get_logger("price_history")

DEFAULT_RETENTION_MS = 48 * 60 * 60 * 1000  # must exceed the longest alert window (24h)


def _finite(x) -> bool:
    return isinstance(x, (int, float)) and math.isfinite(x)


class RedisPriceHistory:
    """
    Append-only price samples per asset on RedisTimeSeries.

    Key: ts:{ASSET}:price, created on first TS.ADD with retention & labels.
    ON_DUPLICATE LAST makes re-recording the same timestamp a replace, so a
    duplicated tick never produces two samples at one instant.
    """

    def __init__(self, redis: Redis, retention_ms: int = DEFAULT_RETENTION_MS):
        self.redis = redis
        self.retention_ms = int(retention_ms)

    async def record(self, asset_id: str, price: float, at: Optional[float] = None) -> int:
        """
        Append one sample. Raises on store errors; callers iterate per asset
        so one failure does not stop the others.
        """
        if not _finite(price) or price <= 0.0:
            raise ValueError(f"refusing to record non-positive/non-finite price {price!r} for {asset_id}")
        ts = utc_now_s() if at is None else at
        return await self.redis.execute_command(
            "TS.ADD", keys.price_series(asset_id), epoch_ms(ts), float(price),
            "RETENTION", self.retention_ms,
            "ON_DUPLICATE", "LAST",
            "LABELS", "asset", asset_id, "field", "price",
        )

    async def oldest_sample_within_window(
        self,
        asset_id: str,
        window_minutes: int,
        now: Optional[float] = None,
    ) -> Optional[PriceSample]:
        """
        Baseline for a window: the OLDEST sample with ts in [now - window, now].
        Never looks further back than the window. None means not enough
        history; the caller must not trigger on it.
        """
        now = utc_now_s() if now is None else now
        key = keys.price_series(asset_id)
        # TS.RANGE on a missing key is an error, not an empty reply
        if not await self.redis.exists(key):
            return None

        start_ms = max(0, epoch_ms(minutes_before(now, window_minutes)))
        end_ms = epoch_ms(now)
        data = await self.redis.execute_command("TS.RANGE", key, start_ms, end_ms, "COUNT", 1)
        if not data:
            return None
        ts, val = data[0]
        try:
            price = float(val if not isinstance(val, (bytes, bytearray)) else val.decode("utf-8"))
        except (TypeError, ValueError):
            log.warning("price_sample_malformed", asset=asset_id, raw=str(val)[:50])
            return None
        return PriceSample(asset_id=asset_id, price=price, ts=from_ms(ts))
