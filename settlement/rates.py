"""Currency conversion against a live price feed."""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, Mapping, Optional, Tuple

import aiohttp
from yarl import URL

from .errors import ConversionUnavailableError

# Symbols priced by definition rather than by the feed.
USD_SYMBOLS = frozenset({"USD"})

COINGECKO_IDS: Dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "TRX": "tron",
    "SOL": "solana",
    "BNB": "binancecoin",
    "USDT": "tether",
    "USDC": "usd-coin",
}


class PriceFeedError(RuntimeError):
    """Raised when a price feed cannot produce a usable quote."""


class PriceFeed(abc.ABC):
    """Source of USD prices for currency symbols."""

    @abc.abstractmethod
    async def usd_price(self, symbol: str) -> Decimal:
        """Return the USD price of one unit of ``symbol``."""

    async def close(self) -> None:
        """Release any network resources held by the feed."""


class StaticPriceFeed(PriceFeed):
    """A feed with fixed prices, used for simulations and tests."""

    def __init__(self, prices: Mapping[str, Decimal]) -> None:
        self._prices = {symbol.upper(): Decimal(price) for symbol, price in prices.items()}

    def set_price(self, symbol: str, price: Decimal) -> None:
        self._prices[symbol.upper()] = Decimal(price)

    async def usd_price(self, symbol: str) -> Decimal:
        try:
            return self._prices[symbol.upper()]
        except KeyError as exc:
            raise PriceFeedError(f"No static price for {symbol}") from exc


class CoinGeckoPriceFeed(PriceFeed):
    """Feed backed by the CoinGecko ``simple/price`` endpoint."""

    def __init__(
        self,
        *,
        base_url: str = "https://api.coingecko.com/api/v3",
        api_key: Optional[str] = None,
        cache_ttl: float = 10.0,
        timeout: float = 10.0,
        coin_ids: Optional[Mapping[str, str]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        base = URL(base_url)
        if not base.scheme:
            raise ValueError("Price feed URL must include a scheme (e.g. https://)")
        self._endpoint = base / "simple" / "price"
        self._api_key = api_key
        self._cache_ttl = cache_ttl
        self._timeout = timeout
        self._coin_ids = dict(coin_ids or COINGECKO_IDS)
        self._cache: Dict[str, Tuple[float, Decimal]] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self._logger = logger or logging.getLogger(__name__)

    async def usd_price(self, symbol: str) -> Decimal:
        symbol = symbol.upper()
        cached = self._cache.get(symbol)
        if cached is not None and time.monotonic() - cached[0] < self._cache_ttl:
            return cached[1]

        coin_id = self._coin_ids.get(symbol)
        if coin_id is None:
            raise PriceFeedError(f"No price feed mapping for {symbol}")

        prices = await self._fetch_prices([coin_id])
        raw = prices.get(coin_id, {}).get("usd")
        if raw is None:
            raise PriceFeedError(f"Price feed returned no USD quote for {symbol}")
        try:
            price = Decimal(str(raw))
        except InvalidOperation as exc:
            raise PriceFeedError(f"Price feed returned malformed quote {raw!r} for {symbol}") from exc

        if self._cache_ttl > 0:
            self._cache[symbol] = (time.monotonic(), price)
        self._logger.debug("Fetched %s/USD = %s", symbol, price)
        return price

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _fetch_prices(self, coin_ids: Iterable[str]) -> Dict[str, Dict[str, object]]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-cg-pro-api-key"] = self._api_key
        params = {"ids": ",".join(coin_ids), "vs_currencies": "usd"}

        try:
            session = self._get_session()
            async with session.get(self._endpoint, params=params, headers=headers) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise PriceFeedError(
                        f"Price feed request failed with status {response.status}: {body.strip()}"
                    )
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise PriceFeedError("Failed to contact price feed") from exc

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
        return self._session


class RateConverter:
    """Convert amounts between currencies at the current feed price.

    Results are only valid for the settlement attempt that asked for them;
    nothing here persists a rate.
    """

    def __init__(
        self,
        feed: PriceFeed,
        *,
        timeout: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._feed = feed
        self._timeout = timeout
        self._logger = logger or logging.getLogger(__name__)

    async def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
        if from_currency.upper() == to_currency.upper():
            return amount
        try:
            from_price, to_price = await asyncio.wait_for(
                asyncio.gather(self._price(from_currency), self._price(to_currency)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ConversionUnavailableError(
                f"Price feed timed out converting {from_currency} to {to_currency}"
            ) from exc
        except PriceFeedError as exc:
            raise ConversionUnavailableError(
                f"Cannot convert {from_currency} to {to_currency}: {exc}"
            ) from exc

        if from_price <= 0 or to_price <= 0:
            raise ConversionUnavailableError(
                f"Price feed returned a non-positive price for {from_currency}/{to_currency}"
            )

        converted = amount * from_price / to_price
        self._logger.info(
            "Converted %s %s -> %s %s (%s/%s USD)",
            amount,
            from_currency,
            converted,
            to_currency,
            from_price,
            to_price,
        )
        return converted

    async def _price(self, symbol: str) -> Decimal:
        if symbol.upper() in USD_SYMBOLS:
            return Decimal("1")
        return await self._feed.usd_price(symbol)


__all__ = [
    "COINGECKO_IDS",
    "CoinGeckoPriceFeed",
    "PriceFeed",
    "PriceFeedError",
    "RateConverter",
    "StaticPriceFeed",
]
