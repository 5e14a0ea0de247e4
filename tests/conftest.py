"""Shared fixtures for settlement tests."""

import asyncio
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from settlement.chains import AdapterRegistry, ChainAdapter, ChainConfig
from settlement.ledger import BalanceLedger
from settlement.manager import SettlementManager
from settlement.models import Blockchain, ReserveCheck, TransferReceipt
from settlement.rates import RateConverter, StaticPriceFeed
from settlement.signer import DummySignerClient
from settlement.storage import RequestStore

PRICES = {
    "TRX": Decimal("0.25"),
    "ETH": Decimal("3000"),
    "SOL": Decimal("150"),
    "USDT": Decimal("1"),
    "USDC": Decimal("1"),
}


class FakeAdapter(ChainAdapter):
    """Adapter that records every call instead of talking to a chain."""

    def __init__(
        self,
        blockchain: Blockchain,
        currency: str,
        *,
        accounting_currency: Optional[str] = None,
        reserve_constrained: bool = False,
        decimals: int = 6,
    ) -> None:
        config = ChainConfig(
            hot_wallet=f"hot-{blockchain.value.lower()}",
            decimals=decimals,
            accounting_currency=accounting_currency or currency,
        )
        super().__init__(config, DummySignerClient())
        self.blockchain = blockchain
        self.currency = currency
        self.reserve_constrained = reserve_constrained
        self.reserve = ReserveCheck(allowed=True)
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.reserve_checks: List[Decimal] = []
        self.transfers: List[Tuple[Optional[int], str, Decimal, str]] = []
        self.receipts: Dict[str, TransferReceipt] = {}

    @property
    def asset(self) -> Optional[str]:
        return None

    async def check_reserve(self, amount: Decimal) -> ReserveCheck:
        self.reserve_checks.append(amount)
        return self.reserve

    async def transfer(self, user_id, to, amount, *, reference):
        self.transfers.append((user_id, to, amount, reference))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        receipt = TransferReceipt(tx_hash=f"tx-{reference}", success=True)
        self.receipts[reference] = receipt
        return receipt

    async def lookup(self, reference: str) -> Optional[TransferReceipt]:
        return self.receipts.get(reference)


class RecordingConverter(RateConverter):
    def __init__(self, feed: StaticPriceFeed) -> None:
        super().__init__(feed, timeout=1.0)
        self.calls: List[Tuple[Decimal, str, str]] = []

    async def convert(self, amount, from_currency, to_currency):
        self.calls.append((amount, from_currency, to_currency))
        return await super().convert(amount, from_currency, to_currency)


class RecordingLedger(BalanceLedger):
    def __init__(self, database_path: str) -> None:
        super().__init__(database_path)
        self.credits: List[Tuple[int, str, Decimal]] = []

    async def credit(self, user_id, currency, amount, *, reference=None):
        self.credits.append((user_id, currency, amount))
        return await super().credit(user_id, currency, amount, reference=reference)


@pytest.fixture
def database_path(tmp_path) -> str:
    return str(tmp_path / "settlement.db")


@pytest_asyncio.fixture
async def store(database_path):
    store = RequestStore(database_path)
    yield store
    await store.cleanup()


@pytest_asyncio.fixture
async def ledger(database_path):
    ledger = RecordingLedger(database_path)
    yield ledger
    await ledger.cleanup()


@pytest.fixture
def adapters() -> Dict[Tuple[Blockchain, str], FakeAdapter]:
    routes = [
        FakeAdapter(Blockchain.TRON, "TRX", accounting_currency="USDT"),
        FakeAdapter(Blockchain.TRON, "USDT"),
        FakeAdapter(Blockchain.ETHEREUM, "ETH", accounting_currency="USDT", decimals=18),
        FakeAdapter(Blockchain.ETHEREUM, "USDT"),
        FakeAdapter(Blockchain.SOLANA, "SOL", accounting_currency="USD", reserve_constrained=True, decimals=9),
        FakeAdapter(Blockchain.SOLANA, "USDC", accounting_currency="USD", reserve_constrained=True),
    ]
    return {(adapter.blockchain, adapter.currency): adapter for adapter in routes}


@pytest.fixture
def feed() -> StaticPriceFeed:
    return StaticPriceFeed(PRICES)


@pytest.fixture
def converter(feed) -> RecordingConverter:
    return RecordingConverter(feed)


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def manager(store, ledger, adapters, converter, events) -> SettlementManager:
    manager = SettlementManager(
        store=store,
        ledger=ledger,
        registry=AdapterRegistry(list(adapters.values())),
        converter=converter,
        reserve_timeout=1.0,
        stale_after=0.0,
    )
    manager.add_listener(events.append)
    return manager
