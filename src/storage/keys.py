# src/storage/keys.py
from __future__ import annotations

# Redis key layout shared by the repositories.

USER_SEQ = "user:seq"
ALERT_SEQ = "alert:seq"
ALERTLOG_SEQ = "alertlog:seq"
ACTIVE_ALERTS = "alerts:active"


def user(user_id: int) -> str:
    return f"user:{user_id}"


def user_by_telegram(telegram_id: int) -> str:
    return f"user:tg:{telegram_id}"


def alert(alert_id: int) -> str:
    return f"alert:{alert_id}"


def user_alerts(user_id: int) -> str:
    return f"alerts:user:{user_id}"


def price_series(asset_id: str) -> str:
    # ts:{ASSET}:price  (same naming family as the bar series ts:{SYM}:{TF}:{FIELD})
    return f"ts:{asset_id}:price"


def alert_log(log_id: int) -> str:
    return f"alertlog:{log_id}"


def alert_logs_index(alert_id: int) -> str:
    # sorted set: member=log id, score=triggered_at (epoch seconds)
    return f"alertlogs:{alert_id}"
