from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import aiohttp
import structlog

from pricewatch.utils.time import utc_now_s

log = structlog.get_logger("coingecko")

POPULAR_COINS = [
    "bitcoin",
    "ethereum",
    "binancecoin",
    "cardano",
    "solana",
    "polkadot",
    "avalanche-2",
    "chainlink",
    "polygon",
    "litecoin",
]


class PriceFetchError(RuntimeError):
    """The price source could not answer at all (network, HTTP, payload)."""


@dataclass(slots=True)
class CoinGeckoConfig:
    base_url: str = "https://api.coingecko.com/api/v3"
    timeout_s: float = 10.0
    vs_currency: str = "usd"
    coins_cache_ttl_s: float = 3600.0
    user_agent: str = "crypto-drop-alerts/1.0"


@dataclass(slots=True, frozen=True)
class CoinInfo:
    id: str
    symbol: str
    name: str

    @property
    def label(self) -> str:
        return f"{self.name} ({self.symbol.upper()})"


class CoinGeckoClient:
    """
    Spot prices and coin metadata from the CoinGecko public API.

    get_current_prices() is a single /simple/price request for the whole
    asset set. Assets CoinGecko cannot price are simply absent from the
    result; only a failure of the request itself raises PriceFetchError.
    """
    def __init__(self, cfg: Optional[CoinGeckoConfig] = None, session: Optional[aiohttp.ClientSession] = None):
        self.cfg = cfg or CoinGeckoConfig()
        self._session = session
        self._owns_session = session is None
        self._coins: list[CoinInfo] = []
        self._coins_expiry: float = 0.0
        self._coins_lock = asyncio.Lock()

    async def start(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": self.cfg.user_agent, "Accept": "application/json"},
            )
            self._owns_session = True

    async def stop(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    # ---------- transport ----------

    def _url(self, path: str) -> str:
        return f"{self.cfg.base_url.rstrip('/')}/{path.lstrip('/')}"

    async def _get_json(self, path: str, params: Optional[dict[str, str]] = None) -> Any:
        if self._session is None:
            await self.start()
        assert self._session is not None
        log.debug("api_request", path=path, params=params)
        try:
            async with self._session.get(self._url(path), params=params) as resp:
                if resp.status != 200:
                    body = await _maybe_text(resp)
                    log.error("api_error", path=path, status=resp.status, body=body[:200])
                    raise PriceFetchError(f"GET {path} -> HTTP {resp.status}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.error("api_network_error", path=path, err=str(e) or type(e).__name__)
            raise PriceFetchError(f"GET {path} failed: {e!r}") from e
        except ValueError as e:
            # JSON decoding
            raise PriceFetchError(f"GET {path} returned malformed JSON") from e
        log.debug("api_response", path=path)
        return data

    # ---------- prices ----------

    async def get_current_prices(self, asset_ids: Iterable[str]) -> dict[str, float]:
        ids = sorted({a for a in asset_ids if a})
        if not ids:
            return {}
        data = await self._get_json(
            "simple/price",
            params={
                "ids": ",".join(ids),
                "vs_currencies": self.cfg.vs_currency,
                "include_last_updated_at": "true",
            },
        )
        if not isinstance(data, dict):
            raise PriceFetchError("unexpected /simple/price payload")

        prices: dict[str, float] = {}
        for coin_id, row in data.items():
            if not isinstance(row, dict):
                continue
            px = row.get(self.cfg.vs_currency)
            if isinstance(px, bool) or not isinstance(px, (int, float)):
                continue
            if not math.isfinite(px) or px <= 0:
                continue
            prices[coin_id] = float(px)
        log.debug("prices_fetched", requested=len(ids), priced=len(prices))
        return prices

    async def get_price(self, asset_id: str) -> Optional[float]:
        prices = await self.get_current_prices([asset_id])
        return prices.get(asset_id)

    # ---------- coin metadata ----------

    async def get_supported_coins(self) -> list[CoinInfo]:
        async with self._coins_lock:
            if self._coins and utc_now_s() < self._coins_expiry:
                return self._coins
            log.info("coins_list_fetching")
            data = await self._get_json("coins/list")
            if not isinstance(data, list):
                raise PriceFetchError("unexpected /coins/list payload")
            coins = []
            for row in data:
                try:
                    coins.append(CoinInfo(id=str(row["id"]), symbol=str(row["symbol"]), name=str(row["name"])))
                except (KeyError, TypeError):
                    continue
            self._coins = coins
            self._coins_expiry = utc_now_s() + self.cfg.coins_cache_ttl_s
            log.info("coins_list_fetched", count=len(coins))
            return self._coins

    async def find_coin_by_symbol(self, query: str) -> Optional[CoinInfo]:
        q = query.strip().lower()
        if not q:
            return None
        coins = await self.get_supported_coins()
        # exact id, then exact symbol, then substring of name/id
        for c in coins:
            if c.id.lower() == q:
                return c
        for c in coins:
            if c.symbol.lower() == q:
                return c
        for c in coins:
            if q in c.name.lower() or q in c.id.lower():
                return c
        return None

    async def get_coin_info(self, asset_id: str) -> Optional[CoinInfo]:
        for c in await self.get_supported_coins():
            if c.id == asset_id:
                return c
        return None

    async def asset_label(self, asset_id: str) -> str:
        """Human label for messages; falls back to the raw id."""
        try:
            info = await self.get_coin_info(asset_id)
        except PriceFetchError:
            return asset_id
        return info.label if info else asset_id


async def _maybe_text(resp: aiohttp.ClientResponse) -> str:
    try:
        return await resp.text()
    except (aiohttp.ClientError, UnicodeDecodeError):
        return "<no body>"
