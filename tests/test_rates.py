import asyncio
from decimal import Decimal

import pytest

from settlement.errors import ConversionUnavailableError
from settlement.rates import CoinGeckoPriceFeed, PriceFeed, PriceFeedError, RateConverter, StaticPriceFeed


class ExplodingFeed(PriceFeed):
    async def usd_price(self, symbol):
        raise AssertionError(f"feed should not be called for {symbol}")


class SlowFeed(PriceFeed):
    async def usd_price(self, symbol):
        await asyncio.sleep(5)
        return Decimal("1")


@pytest.mark.asyncio
async def test_same_currency_passes_through_without_feed():
    converter = RateConverter(ExplodingFeed())

    assert await converter.convert(Decimal("7.5"), "USDT", "usdt") == Decimal("7.5")


@pytest.mark.asyncio
async def test_converts_through_usd_prices():
    converter = RateConverter(StaticPriceFeed({"USDT": Decimal("1"), "TRX": Decimal("0.25")}))

    assert await converter.convert(Decimal("10"), "USDT", "TRX") == Decimal("40")


@pytest.mark.asyncio
async def test_usd_is_priced_without_feed_lookup():
    converter = RateConverter(StaticPriceFeed({"SOL": Decimal("150")}))

    assert await converter.convert(Decimal("300"), "USD", "SOL") == Decimal("2")


@pytest.mark.asyncio
async def test_unknown_symbol_is_unavailable():
    converter = RateConverter(StaticPriceFeed({"USDT": Decimal("1")}))

    with pytest.raises(ConversionUnavailableError):
        await converter.convert(Decimal("1"), "USDT", "ETH")


@pytest.mark.asyncio
async def test_non_positive_price_is_unavailable():
    converter = RateConverter(StaticPriceFeed({"ETH": Decimal("0")}))

    with pytest.raises(ConversionUnavailableError):
        await converter.convert(Decimal("1"), "USD", "ETH")


@pytest.mark.asyncio
async def test_slow_feed_times_out():
    converter = RateConverter(SlowFeed(), timeout=0.05)

    with pytest.raises(ConversionUnavailableError, match="timed out"):
        await converter.convert(Decimal("1"), "USDT", "TRX")


@pytest.mark.asyncio
async def test_coingecko_feed_parses_and_caches(monkeypatch):
    feed = CoinGeckoPriceFeed(cache_ttl=60)
    calls = []

    async def fake_fetch(coin_ids):
        calls.append(list(coin_ids))
        return {"tron": {"usd": 0.2512}}

    monkeypatch.setattr(feed, "_fetch_prices", fake_fetch)

    assert await feed.usd_price("trx") == Decimal("0.2512")
    assert await feed.usd_price("TRX") == Decimal("0.2512")
    assert calls == [["tron"]]


@pytest.mark.asyncio
async def test_coingecko_feed_without_cache_refetches(monkeypatch):
    feed = CoinGeckoPriceFeed(cache_ttl=0)
    calls = []

    async def fake_fetch(coin_ids):
        calls.append(list(coin_ids))
        return {"solana": {"usd": 151}}

    monkeypatch.setattr(feed, "_fetch_prices", fake_fetch)

    await feed.usd_price("SOL")
    await feed.usd_price("SOL")
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_coingecko_feed_rejects_unmapped_or_missing_quotes(monkeypatch):
    feed = CoinGeckoPriceFeed()

    async def fake_fetch(coin_ids):
        return {}

    monkeypatch.setattr(feed, "_fetch_prices", fake_fetch)

    with pytest.raises(PriceFeedError):
        await feed.usd_price("DOGE")
    with pytest.raises(PriceFeedError):
        await feed.usd_price("ETH")


def test_coingecko_feed_requires_scheme():
    with pytest.raises(ValueError):
        CoinGeckoPriceFeed(base_url="api.coingecko.com")
