# src/pricewatch/main.py
import asyncio
import signal
import sys

import structlog
from dotenv import load_dotenv

from pricewatch.alerts.cooldown import CooldownTracker
from pricewatch.alerts.evaluator import AlertEvaluator, EvaluatorConfig
from pricewatch.alerts.notifiers import ConsoleNotifier
from pricewatch.bot.commands import CommandRouter
from pricewatch.bot.poller import TelegramPoller
from pricewatch.bot.session import CommandRateLimiter, SessionStore
from pricewatch.config import AppConfig, ConfigError, load_config
from pricewatch.health import health_report
from pricewatch.logs import configure_logging
from pricewatch.notify.telegram import TelegramClient, TelegramNotifier
from pricewatch.prices.coingecko import CoinGeckoClient
from pricewatch.scheduler import TickScheduler

from storage.alerts_repo import RedisAlertRepository
from storage.connection import StoreUnavailable, connect
from storage.price_history import RedisPriceHistory
from storage.trigger_log import RedisTriggerLog
from storage.users_repo import RedisUserRepository

load_dotenv()
log = structlog.get_logger()


# ---------------------------
# Background helpers
# ---------------------------

async def health_logger(redis, scheduler, poller, interval_s: float, stop: asyncio.Event):
    """Log a health snapshot every interval until stop is set."""
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_s)
            return
        except asyncio.TimeoutError:
            pass
        report = await health_report(redis, scheduler, poller)
        if report["status"] == "ok":
            log.info("health", **report)
        else:
            log.warning("health", **report)


async def startup_ping(notifier, chat_id: int, interval_minutes: float):
    ok = await notifier.send(chat_id, f"✅ Crypto alert bot started. Checking prices every {interval_minutes:g} min.")
    if not ok:
        log.warning("startup_ping_failed", chat_id=chat_id)


def install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops: Ctrl+C still arrives as KeyboardInterrupt
            pass


# ---------------------------
# Main
# ---------------------------

async def main(cfg: AppConfig) -> int:
    try:
        redis_client = await connect(cfg.redis_url)
    except StoreUnavailable as e:
        log.error("startup_failed", reason="store_unavailable", err=str(e))
        return 1

    # ----- Storage -----
    users = RedisUserRepository(redis_client)
    alerts = RedisAlertRepository(redis_client)
    history = RedisPriceHistory(redis_client, retention_ms=int(cfg.retention_hours * 3600 * 1000))
    trigger_log = RedisTriggerLog(redis_client)
    cooldown = CooldownTracker(trigger_log)

    # ----- External clients -----
    coins = CoinGeckoClient(cfg.coingecko)
    await coins.start()

    tg_client = None
    if cfg.telegram is not None:
        tg_client = TelegramClient(cfg.telegram)
        await tg_client.start()
        notifier = TelegramNotifier(tg_client)
        log.info("telegram_enabled")
    else:
        notifier = ConsoleNotifier()
        log.info("console_notifier_enabled")

    # ----- Engine -----
    evaluator = AlertEvaluator(
        alerts=alerts,
        users=users,
        history=history,
        trigger_log=trigger_log,
        cooldown=cooldown,
        fetcher=coins,
        notifier=notifier,
        cfg=EvaluatorConfig(cooldown_minutes=cfg.cooldown_minutes, tz_name=cfg.display_tz),
    )
    scheduler = TickScheduler(evaluator.run_tick, cfg.scheduler)

    # ----- Chat commands (Telegram only) -----
    poller = None
    if tg_client is not None:
        router = CommandRouter(
            users=users,
            alerts=alerts,
            coins=coins,
            sessions=SessionStore(),
            limiter=CommandRateLimiter(max_per_minute=cfg.max_commands_per_minute),
            cooldown=cooldown,
        )
        poller = TelegramPoller(tg_client, router)

    # ----- Run everything -----
    stop = asyncio.Event()
    install_signal_handlers(stop)

    await scheduler.start()
    if poller is not None:
        await poller.start()
    if cfg.admin_chat_id is not None:
        await startup_ping(notifier, cfg.admin_chat_id, cfg.scheduler.interval_minutes)
    health_task = asyncio.create_task(
        health_logger(redis_client, scheduler, poller, cfg.health_interval_s, stop), name="health-logger"
    )
    log.info("service_started", interval_minutes=cfg.scheduler.interval_minutes,
             cooldown_minutes=cfg.cooldown_minutes, notifier=cfg.notifier)

    try:
        await stop.wait()
    finally:
        log.info("shutdown_requested")
        # scheduler first so no new tick starts while clients close
        await scheduler.stop()
        if poller is not None:
            await poller.stop()
        stop.set()
        await health_task
        await coins.stop()
        if tg_client is not None:
            await tg_client.stop()
        await redis_client.aclose()
        log.info("shutdown_complete")
    return 0


def run() -> None:
    try:
        cfg = load_config()
    except ConfigError as e:
        configure_logging()
        log.error("startup_failed", reason="config", err=str(e))
        sys.exit(1)
    configure_logging(cfg.log.level, cfg.log.fmt, cfg.log.file)
    try:
        code = asyncio.run(main(cfg))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    run()
