from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

from pricewatch.utils.time import utc_now_s

log = structlog.get_logger("scheduler")


@dataclass(slots=True)
class SchedulerConfig:
    interval_minutes: float = 5.0
    shutdown_grace_s: float = 30.0
    run_immediately: bool = True   # first tick at start() instead of after one interval

    @property
    def interval_s(self) -> float:
        return self.interval_minutes * 60.0


@dataclass(slots=True)
class SchedulerStats:
    ticks_run: int = 0
    ticks_failed: int = 0
    overruns: int = 0
    last_started_at: Optional[float] = None
    last_finished_at: Optional[float] = None
    last_ok_at: Optional[float] = None


class TickScheduler:
    """
    Fixed-interval driver for one tick function.

    Ticks never overlap: the next one is awaited only after the previous one
    returns. A tick that runs past the next due time delays that tick (logged
    as tick_overrun) instead of skipping or doubling it.

    stop() stops scheduling first, then lets an in-flight tick finish for up
    to shutdown_grace_s before cancelling it.
    """
    def __init__(self, tick_fn: Callable[[], Awaitable[Any]], cfg: Optional[SchedulerConfig] = None):
        if cfg is not None and cfg.interval_minutes <= 0:
            raise ValueError("interval_minutes must be > 0")
        self.tick_fn = tick_fn
        self.cfg = cfg or SchedulerConfig()
        self.stats = SchedulerStats()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._in_tick = False

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="tick-scheduler")
        log.info("scheduler_started", interval_minutes=self.cfg.interval_minutes)

    async def stop(self) -> None:
        self._stop.set()
        task = self._task
        if task is None:
            return
        done, _ = await asyncio.wait({task}, timeout=self.cfg.shutdown_grace_s)
        if not done:
            log.warning("tick_abandoned", grace_s=self.cfg.shutdown_grace_s)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        log.info("scheduler_stopped", ticks_run=self.stats.ticks_run)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_tick(self) -> bool:
        return self._in_tick

    def healthy(self, now: Optional[float] = None) -> bool:
        """Quick health signal: a tick succeeded within the last two intervals."""
        if not self.running:
            return False
        now = utc_now_s() if now is None else now
        if self.stats.last_ok_at is None:
            return self.stats.ticks_failed == 0
        return (now - self.stats.last_ok_at) <= 2 * self.cfg.interval_s

    # ---- loop ----

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.cfg.interval_s
        next_at = loop.time() if self.cfg.run_immediately else loop.time() + interval
        try:
            while not self._stop.is_set():
                delay = next_at - loop.time()
                if delay > 0:
                    try:
                        await asyncio.wait_for(self._stop.wait(), timeout=delay)
                        break  # stop requested while idle
                    except asyncio.TimeoutError:
                        pass

                await self._run_once()

                next_at += interval
                now = loop.time()
                if now > next_at:
                    self.stats.overruns += 1
                    log.warning("tick_overrun", late_s=round(now - next_at, 3), interval_s=interval)
                    next_at = now
        except asyncio.CancelledError:
            return

    async def _run_once(self) -> None:
        self._in_tick = True
        self.stats.ticks_run += 1
        self.stats.last_started_at = utc_now_s()
        try:
            await self.tick_fn()
            self.stats.last_ok_at = utc_now_s()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.ticks_failed += 1
            log.error("tick_failed", err=str(e), exc_info=True)
        finally:
            self.stats.last_finished_at = utc_now_s()
            self._in_tick = False
