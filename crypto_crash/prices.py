# prices.py
"""
Price Oracle – CoinGecko USD quotes

Responsibilities:
- Fetch USD prices for supported assets (btc, eth)
- Per-currency cache with a freshness window
- Serve the last known price when the upstream fails or times out
- USD <-> crypto conversion helpers

A price returned from here is always a finite Decimal > 0.
"""

from __future__ import annotations

import os
import time
import asyncio
import logging
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

import httpx

from crypto_crash.exceptions import InvalidInput, PriceUnavailable
from crypto_crash.utils import safe_decimal

logger = logging.getLogger("crypto_crash.prices")

# =====================================================
# CONFIG
# =====================================================

COINGECKO_API_URL = os.getenv("COINGECKO_API_URL", "https://api.coingecko.com/api/v3")
COINGECKO_API_KEY = os.getenv("COINGECKO_API_KEY", "")

PRICE_CACHE_SECONDS = float(os.getenv("PRICE_CACHE_SECONDS", "10"))
PRICE_TIMEOUT_SECONDS = float(os.getenv("PRICE_TIMEOUT_SECONDS", "5"))

# Internal currency code -> CoinGecko coin id
COIN_IDS: Dict[str, str] = {
    "btc": "bitcoin",
    "eth": "ethereum",
}


def _is_valid_price(price: Decimal) -> bool:
    return price.is_finite() and price > 0


# =====================================================
# ORACLE
# =====================================================

class PriceOracle:
    """
    Cached CoinGecko client.

    The cache is keyed per currency: (price, fetched_at). Inside the
    freshness window the cached value is returned without a request.
    Outside it a fetch is attempted; on any failure the stale value is
    served if one exists, otherwise PriceUnavailable is raised.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = COINGECKO_API_URL,
        api_key: str = COINGECKO_API_KEY,
        cache_seconds: float = PRICE_CACHE_SECONDS,
        timeout: float = PRICE_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._cache_seconds = cache_seconds
        self._timeout = timeout
        self._clock = clock
        self._cache: Dict[str, Tuple[Decimal, float]] = {}

    @staticmethod
    def coin_id(currency: str) -> str:
        coin = COIN_IDS.get((currency or "").lower())
        if not coin:
            raise InvalidInput(f"Invalid currency: {currency}. Must be one of {sorted(COIN_IDS)}")
        return coin

    def cached_price(self, currency: str) -> Optional[Decimal]:
        entry = self._cache.get(currency.lower())
        return entry[0] if entry else None

    async def get_price(self, currency: str) -> Decimal:
        currency = currency.lower()
        coin = self.coin_id(currency)

        now = self._clock()
        entry = self._cache.get(currency)
        if entry and now - entry[1] < self._cache_seconds:
            return entry[0]

        try:
            price = await self._fetch(coin)
        except (httpx.HTTPError, asyncio.TimeoutError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Price API error for {currency}: {e}")
            if entry:
                logger.warning(f"Using cached price for {currency}: {entry[0]}")
                return entry[0]
            raise PriceUnavailable(currency, str(e)) from e

        self._cache[currency] = (price, now)
        logger.debug(f"Fetched price for {currency}: ${price}")
        return price

    async def _fetch(self, coin: str) -> Decimal:
        params = {"ids": coin, "vs_currencies": "usd"}
        if self._api_key:
            params["x_cg_demo_api_key"] = self._api_key

        response = await self._client.get(
            f"{self._base_url}/simple/price",
            params=params,
            timeout=self._timeout,
        )
        response.raise_for_status()

        raw = response.json()[coin]["usd"]
        if isinstance(raw, bool):
            raise ValueError(f"Invalid price received for {coin}: {raw!r}")
        price = safe_decimal(raw, default="NaN")
        if not _is_valid_price(price):
            raise ValueError(f"Invalid price received for {coin}: {raw!r}")
        return price

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# =====================================================
# CONVERSION
# =====================================================

def usd_to_crypto(usd_amount: Decimal, price: Decimal) -> Decimal:
    if usd_amount <= 0:
        raise InvalidInput("USD amount must be a positive number")
    if not _is_valid_price(price):
        raise InvalidInput("Price must be a positive number")
    return usd_amount / price


def crypto_to_usd(crypto_amount: Decimal, price: Decimal) -> Decimal:
    if crypto_amount < 0:
        raise InvalidInput("Crypto amount cannot be negative")
    if not _is_valid_price(price):
        raise InvalidInput("Price must be a positive number")
    return crypto_amount * price
