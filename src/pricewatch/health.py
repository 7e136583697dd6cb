from __future__ import annotations

from typing import Any, Optional

from redis.asyncio import Redis

from pricewatch.bot.poller import TelegramPoller
from pricewatch.scheduler import TickScheduler
from pricewatch.utils.time import utc_now_s
from storage.connection import is_reachable

_STARTED_AT = utc_now_s()


async def health_report(
    redis: Redis,
    scheduler: TickScheduler,
    poller: Optional[TelegramPoller] = None,
    now: Optional[float] = None,
) -> dict[str, Any]:
    now = utc_now_s() if now is None else now
    redis_ok = await is_reachable(redis)
    scheduler_ok = scheduler.healthy(now=now)
    stats = scheduler.stats

    report: dict[str, Any] = {
        "status": "ok" if (redis_ok and scheduler_ok) else "degraded",
        "uptime_s": round(now - _STARTED_AT, 1),
        "redis": redis_ok,
        "scheduler_running": scheduler.running,
        "in_tick": scheduler.in_tick,
        "ticks_run": stats.ticks_run,
        "ticks_failed": stats.ticks_failed,
        "overruns": stats.overruns,
        "last_ok_at": stats.last_ok_at,
    }
    if poller is not None:
        report["poller_running"] = poller.running
        report["commands_handled"] = poller.handled
        if not poller.running:
            report["status"] = "degraded"
    return report
