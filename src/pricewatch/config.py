from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pricewatch.logs import level_from_name
from pricewatch.notify.telegram import TelegramConfig
from pricewatch.prices.coingecko import CoinGeckoConfig
from pricewatch.scheduler import SchedulerConfig


class ConfigError(ValueError):
    """Startup configuration is missing or invalid."""


@dataclass(slots=True)
class LogConfig:
    level: str = "info"
    fmt: str = "console"           # "console" | "json"
    file: Optional[str] = None


@dataclass(slots=True)
class AppConfig:
    redis_url: str
    notifier: str                  # "telegram" | "console"
    telegram: Optional[TelegramConfig]
    coingecko: CoinGeckoConfig
    scheduler: SchedulerConfig
    cooldown_minutes: float = 30.0
    retention_hours: float = 48.0
    max_commands_per_minute: int = 10
    display_tz: str = "UTC"
    admin_chat_id: Optional[int] = None
    health_interval_s: float = 300.0
    log: LogConfig = field(default_factory=LogConfig)


def _get(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    v = env.get(name)
    if v is None or not v.strip():
        return default
    return v.strip()


def _num(env: Mapping[str, str], name: str, default: float, *, minimum: float, cast=float):
    raw = _get(env, name)
    if raw is None:
        return cast(default)
    try:
        v = cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if v < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {v}")
    return v


def load_config(env: Optional[Mapping[str, str]] = None) -> AppConfig:
    env = os.environ if env is None else env

    notifier = (_get(env, "NOTIFIER", "telegram") or "telegram").lower()
    if notifier not in ("telegram", "console"):
        raise ConfigError(f"NOTIFIER must be 'telegram' or 'console', got {notifier!r}")

    telegram: Optional[TelegramConfig] = None
    token = _get(env, "TELEGRAM_BOT_TOKEN")
    if notifier == "telegram":
        if token is None:
            raise ConfigError("TELEGRAM_BOT_TOKEN is required (or set NOTIFIER=console)")
        telegram = TelegramConfig(bot_token=token)

    retention_hours = _num(env, "PRICE_RETENTION_HOURS", 48, minimum=1)
    if retention_hours <= 24:
        # the longest window is 24h; shorter retention would starve it
        raise ConfigError("PRICE_RETENTION_HOURS must be greater than 24")

    tz = _get(env, "DISPLAY_TZ", "UTC") or "UTC"
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigError(f"DISPLAY_TZ is not a known time zone: {tz!r}") from None

    admin_raw = _get(env, "ADMIN_CHAT_ID")
    try:
        admin_chat_id = int(admin_raw) if admin_raw is not None else None
    except ValueError:
        raise ConfigError(f"ADMIN_CHAT_ID must be an integer chat id, got {admin_raw!r}") from None

    log_fmt = (_get(env, "LOG_FORMAT", "console") or "console").lower()
    if log_fmt not in ("console", "json"):
        raise ConfigError(f"LOG_FORMAT must be 'console' or 'json', got {log_fmt!r}")
    log_level = (_get(env, "LOG_LEVEL", "info") or "info").lower()
    try:
        level_from_name(log_level)
    except ValueError as e:
        raise ConfigError(f"LOG_LEVEL: {e}") from None

    return AppConfig(
        redis_url=_get(env, "REDIS_URL", "redis://localhost:6379/0"),
        notifier=notifier,
        telegram=telegram,
        coingecko=CoinGeckoConfig(
            base_url=_get(env, "COINGECKO_API_URL", "https://api.coingecko.com/api/v3"),
            timeout_s=_num(env, "FETCH_TIMEOUT_S", 10, minimum=1),
        ),
        scheduler=SchedulerConfig(
            interval_minutes=_num(env, "PRICE_CHECK_INTERVAL_MINUTES", 5, minimum=1),
            shutdown_grace_s=_num(env, "SHUTDOWN_GRACE_S", 30, minimum=0),
        ),
        cooldown_minutes=_num(env, "ALERT_COOLDOWN_MINUTES", 30, minimum=1),
        retention_hours=retention_hours,
        max_commands_per_minute=_num(env, "MAX_COMMANDS_PER_MINUTE", 10, minimum=1, cast=int),
        display_tz=tz,
        admin_chat_id=admin_chat_id,
        health_interval_s=_num(env, "HEALTH_LOG_INTERVAL_S", 300, minimum=10),
        log=LogConfig(
            level=log_level,
            fmt=log_fmt,
            file=_get(env, "LOG_FILE"),
        ),
    )
