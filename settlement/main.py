"""Entry point for running the settlement API server."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from decimal import Decimal
from typing import Iterable

from .alerts import DiscordAlertNotifier
from .chains import build_registry
from .config import Settings
from .ledger import BalanceLedger
from .manager import SettlementManager
from .models import Blockchain
from .rates import CoinGeckoPriceFeed, PriceFeed, RateConverter, StaticPriceFeed
from .server import SettlementServer, create_app
from .signer import DummySignerClient, HTTPSignerClient, SignerClient
from .storage import RequestStore

_LOGGER = logging.getLogger(__name__)

SIMULATED_PRICES = {
    "TRX": Decimal("0.25"),
    "ETH": Decimal("3000"),
    "SOL": Decimal("150"),
    "USDT": Decimal("1"),
    "USDC": Decimal("1"),
}


def build_signer(settings: Settings) -> SignerClient:
    if settings.signer_endpoint:
        return HTTPSignerClient(
            settings.signer_endpoint,
            api_key=settings.signer_api_key,
            timeout=settings.transfer_timeout,
            read_timeout=settings.reserve_timeout,
        )
    signer = DummySignerClient()
    signer.set_balance(Blockchain.SOLANA, settings.sol_hot_wallet, Decimal("1000"))
    signer.set_balance(Blockchain.SOLANA, settings.sol_hot_wallet, Decimal("100000"), asset=settings.sol_usdc_mint)
    return signer


def build_price_feed(settings: Settings) -> PriceFeed:
    if settings.simulated:
        return StaticPriceFeed(SIMULATED_PRICES)
    return CoinGeckoPriceFeed(
        base_url=settings.price_feed_url,
        api_key=settings.price_feed_api_key,
        cache_ttl=settings.price_cache_ttl,
        timeout=settings.conversion_timeout,
    )


async def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    if settings.simulated:
        _LOGGER.warning("SIGNER_ENDPOINT not set; transfers and prices are simulated")

    store = RequestStore(settings.database_path)
    ledger = BalanceLedger(settings.database_path)
    signer = build_signer(settings)
    feed = build_price_feed(settings)
    manager = SettlementManager(
        store=store,
        ledger=ledger,
        registry=build_registry(settings, signer),
        converter=RateConverter(feed, timeout=settings.conversion_timeout),
        reserve_timeout=settings.reserve_timeout,
        stale_after=max(300.0, settings.transfer_timeout * 4),
    )
    notifier = None
    if settings.alert_webhook_url:
        notifier = DiscordAlertNotifier(settings.alert_webhook_url)
        manager.add_listener(notifier)

    app = create_app(manager)
    server = SettlementServer(app, host=settings.api_host, port=settings.api_port)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        stop_event.set()

    for sig in _supported_signals():  # pragma: no cover - depends on platform
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:  # pragma: no cover - Windows fallback
            signal.signal(sig, lambda *_: stop_event.set())

    server_task = asyncio.create_task(server.serve(), name="settlement-api")
    server_task.add_done_callback(lambda _: stop_event.set())

    await stop_event.wait()

    await server.shutdown()
    with contextlib.suppress(asyncio.CancelledError):
        await server_task

    if notifier is not None:
        await notifier.close()
    await feed.close()
    await signer.close()
    await ledger.cleanup()
    await store.cleanup()


def _supported_signals() -> Iterable[int]:
    yield signal.SIGINT
    yield signal.SIGTERM


if __name__ == "__main__":
    asyncio.run(main())
