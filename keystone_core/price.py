"""
Fiat price of the base unit, for display next to balances.

Fetches the BTC/USD price from a CoinGecko-style ``simple/price`` endpoint
and converts it to USD per satoshi.  Any failure (network, HTTP status,
unexpected body) yields the fallback rate; the price feed never raises.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

import aiohttp

logger = logging.getLogger("keystone_price")

DEFAULT_PRICE_URL = (
    "https://api.coingecko.com/api/v3/simple/price?ids=bitcoin&vs_currencies=usd"
)
FALLBACK_USD_PER_SAT = 0.0007
SATS_PER_BTC = 100_000_000

# Cached prices younger than this are served without a request.
DEFAULT_REFRESH_SECONDS = 55.0


class PriceFeed:

    def __init__(
        self,
        url: str = DEFAULT_PRICE_URL,
        fallback: float = FALLBACK_USD_PER_SAT,
        refresh_seconds: float = DEFAULT_REFRESH_SECONDS,
        timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.url = url
        self.fallback = fallback
        self.refresh_seconds = refresh_seconds
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._http_session: Optional[aiohttp.ClientSession] = None
        self._cached: float | None = None
        self._fetched_at: float = 0.0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)
        return self._http_session

    async def close(self) -> None:
        if self._http_session is not None and not self._http_session.closed:
            await self._http_session.close()
        self._http_session = None

    async def usd_per_sat(self) -> float:
        """USD value of one satoshi, cached for ``refresh_seconds``."""
        now = self.clock()
        if self._cached is not None and now - self._fetched_at < self.refresh_seconds:
            return self._cached
        price = await self._fetch()
        if price is None:
            return self._cached if self._cached is not None else self.fallback
        self._cached = price
        self._fetched_at = now
        return price

    async def _fetch(self) -> float | None:
        session = await self._get_session()
        try:
            async with session.get(self.url) as resp:
                if resp.status != 200:
                    logger.warning(f"Failed to fetch BTC price. status: {resp.status}")
                    return None
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning(f"Failed to fetch BTC price: {type(exc).__name__}")
            return None

        try:
            usd = float(data["bitcoin"]["usd"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Invalid price response format")
            return None
        if usd <= 0:
            logger.warning("Invalid price response format")
            return None
        return usd / SATS_PER_BTC

    async def to_usd(self, sats: int) -> float:
        return sats * await self.usd_per_sat()
