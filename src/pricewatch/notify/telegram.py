from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp
import structlog

log = structlog.get_logger("telegram")

# --------- small rate limiter (token bucket) ----------

class RateLimiter:
    def __init__(self, rate_per_sec: float, burst: int = 1):
        self.rate = float(rate_per_sec)
        self.capacity = int(burst)
        self.tokens = float(burst)
        self.updated = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            now = time.monotonic()
            # refill
            self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
            self.updated = now
            # wait if no token
            if self.tokens < 1.0:
                needed = 1.0 - self.tokens
                await asyncio.sleep(needed / self.rate)
                self.updated = time.monotonic()
                self.tokens = 1.0
            self.tokens -= 1.0

# --------- config & client ----------

@dataclass(slots=True)
class TelegramConfig:
    bot_token: str
    api_url: str = "https://api.telegram.org"
    parse_mode: Optional[str] = "Markdown"   # "HTML", "MarkdownV2" or None
    timeout_s: float = 8.0
    poll_timeout_s: int = 30                  # getUpdates long-poll
    rate_per_sec: float = 25.0                # global bot send budget stays under ~30/s
    burst: int = 5


class TelegramAPIError(RuntimeError):
    def __init__(self, method: str, status: int, description: str = ""):
        super().__init__(f"{method} -> {status}: {description}")
        self.method = method
        self.status = status
        self.description = description


class TelegramClient:
    """
    Thin Bot API client over one aiohttp session: sendMessage + getUpdates.
    """
    def __init__(self, cfg: TelegramConfig, session: Optional[aiohttp.ClientSession] = None):
        self.cfg = cfg
        self._session = session
        self._owns_session = session is None

    async def start(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def stop(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _url(self, method: str) -> str:
        return f"{self.cfg.api_url}/bot{self.cfg.bot_token}/{method}"

    async def call(self, method: str, payload: dict[str, Any], timeout_s: Optional[float] = None) -> Any:
        if self._session is None:
            await self.start()
        assert self._session is not None
        kwargs: dict[str, Any] = {"json": payload}
        if timeout_s is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout_s)
        async with self._session.post(self._url(method), **kwargs) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = {}
            if not isinstance(data, dict):
                data = {}
            if resp.status != 200 or not data.get("ok"):
                raise TelegramAPIError(method, resp.status, str(data.get("description", ""))[:200])
            return data.get("result")

    async def send_message(self, chat_id: int | str, text: str, parse_mode: Optional[str] = None) -> Any:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        mode = parse_mode if parse_mode is not None else self.cfg.parse_mode
        if mode:
            payload["parse_mode"] = mode
        return await self.call("sendMessage", payload)

    async def get_updates(self, offset: Optional[int] = None) -> list[dict]:
        payload: dict[str, Any] = {"timeout": self.cfg.poll_timeout_s, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        # the HTTP timeout must outlast the server-side long poll
        result = await self.call("getUpdates", payload, timeout_s=self.cfg.poll_timeout_s + self.cfg.timeout_s)
        return result or []


class TelegramNotifier:
    """
    Alert delivery through the Bot API. One attempt per call, rate limited;
    failures are logged and reported as False, never retried here (the
    scheduler's next tick is the retry boundary).
    """
    def __init__(self, client: TelegramClient, limiter: Optional[RateLimiter] = None):
        self.client = client
        self._rl = limiter or RateLimiter(rate_per_sec=client.cfg.rate_per_sec, burst=client.cfg.burst)

    async def send(self, recipient: int | str, text: str) -> bool:
        await self._rl.acquire()
        try:
            await self.client.send_message(recipient, text)
        except TelegramAPIError as e:
            log.warning("telegram_send_failed", chat_id=recipient, status=e.status, body=e.description)
            return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("telegram_network_error", chat_id=recipient, err=str(e) or type(e).__name__)
            return False
        return True
