from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import aiohttp
import structlog

from pricewatch.bot.commands import CommandRouter, IncomingMessage
from pricewatch.notify.telegram import TelegramAPIError, TelegramClient
from pricewatch.utils.backoff import Backoff
from pricewatch.utils.time import utc_now_s

log = structlog.get_logger("poller")


@dataclass(slots=True)
class PollerConfig:
    initial_backoff_s: float = 1.0
    max_backoff_s: float = 60.0


def parse_update(update: dict) -> Optional[IncomingMessage]:
    """getUpdates item -> IncomingMessage, or None for anything that isn't a text message."""
    msg = update.get("message")
    if not isinstance(msg, dict):
        return None
    text = msg.get("text")
    chat = msg.get("chat") or {}
    sender = msg.get("from") or {}
    if not isinstance(text, str) or "id" not in chat or "id" not in sender:
        return None
    return IncomingMessage(
        chat_id=int(chat["id"]),
        user_key=int(sender["id"]),
        text=text,
        username=sender.get("username"),
    )


class TelegramPoller:
    """
    Long-polls getUpdates and feeds text messages to the command router.

    The offset only advances past updates that were handed to the router,
    so a crash mid-batch replays at most that batch. Poll errors back off
    with jitter; handler errors are logged per update and never stop the loop.
    """
    def __init__(self, client: TelegramClient, router: CommandRouter, cfg: Optional[PollerConfig] = None):
        self.client = client
        self.router = router
        self.cfg = cfg or PollerConfig()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._offset: Optional[int] = None
        self._backoff = Backoff(self.cfg.initial_backoff_s, self.cfg.max_backoff_s)
        self.last_ok_at: Optional[float] = None
        self.handled = 0

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="telegram-poller")
        log.info("poller_started")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        log.info("poller_stopped", handled=self.handled)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                updates = await self.client.get_updates(self._offset)
            except asyncio.CancelledError:
                raise
            except (TelegramAPIError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                delay = self._backoff.next_delay()
                log.warning("poll_error_retry", err=str(e) or type(e).__name__,
                            failures=self._backoff.failures, sleep_s=round(delay, 2))
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
                continue

            self._backoff.reset()
            self.last_ok_at = utc_now_s()
            for update in updates:
                await self._dispatch(update)
                update_id = update.get("update_id")
                if isinstance(update_id, int):
                    self._offset = update_id + 1

    async def _dispatch(self, update: dict) -> None:
        msg = parse_update(update)
        if msg is None:
            return
        try:
            reply = await self.router.handle(msg)
            if reply:
                await self.client.send_message(msg.chat_id, reply)
            self.handled += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("update_handling_failed", update_id=update.get("update_id"),
                      chat_id=msg.chat_id, err=str(e), exc_info=True)
