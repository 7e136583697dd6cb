from __future__ import annotations

import time
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

# --- epoch helpers (all stored timestamps are UTC epoch seconds) ---

def utc_now_s() -> float:
    """Unix epoch seconds (float)."""
    return time.time()


def epoch_ms(ts: float) -> int:
    """Epoch seconds -> integer milliseconds (RedisTimeSeries resolution)."""
    return int(round(ts * 1000))


def from_ms(ts_ms: int | str) -> float:
    """Integer milliseconds -> epoch seconds."""
    return int(ts_ms) / 1000.0


def minutes_before(ts: float, minutes: float) -> float:
    """Epoch seconds `minutes` before `ts`."""
    return ts - minutes * 60.0


def utc_dt(ts: float | int) -> datetime:
    """Epoch seconds -> timezone-aware UTC datetime."""
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def local_dt(ts: float | int, tz_name: str = "UTC") -> datetime:
    """Epoch seconds -> aware datetime in `tz_name`."""
    return datetime.fromtimestamp(float(ts), ZoneInfo(tz_name))


def seconds_since(ts_past: float, now: float | None = None) -> float:
    """Non-negative time since past (clamped at 0)."""
    now = utc_now_s() if now is None else now
    return max(0.0, now - ts_past)
