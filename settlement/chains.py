"""Chain adapters: one per (blockchain, currency) route."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Tuple, Type

from .errors import InvalidAmountError, TransferFailedError, UnsupportedRouteError
from .models import Blockchain, ReserveCheck, TransferOrder, TransferReceipt
from .signer import SignerClient

if TYPE_CHECKING:
    from .config import Settings


@dataclass(slots=True)
class ChainConfig:
    """Static configuration of one transfer route."""

    hot_wallet: str
    decimals: int
    accounting_currency: str
    token_address: Optional[str] = None
    min_reserve: Decimal = Decimal("0")
    fee_reserve: Decimal = Decimal("0")


class ChainAdapter(abc.ABC):
    """Executes reserve checks and transfers for a single route."""

    blockchain: Blockchain
    currency: str
    reserve_constrained: bool = False

    def __init__(
        self,
        config: ChainConfig,
        signer: SignerClient,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self._signer = signer
        self._logger = logger or logging.getLogger(__name__)

    @property
    def unit(self) -> str:
        """The currency the transfer is denominated in."""

        return self.currency

    @property
    def accounting_currency(self) -> str:
        return self.config.accounting_currency

    @property
    def route(self) -> str:
        return f"{self.blockchain.value}:{self.currency}"

    @property
    @abc.abstractmethod
    def asset(self) -> Optional[str]:
        """Token contract or mint, ``None`` for the chain's native coin."""

    def quantize(self, amount: Decimal) -> Decimal:
        """Round ``amount`` down to what the chain can represent."""

        step = Decimal(1).scaleb(-self.config.decimals)
        try:
            return amount.quantize(step, rounding=ROUND_DOWN)
        except InvalidOperation as exc:
            raise InvalidAmountError(
                f"{amount} {self.unit} cannot be represented at {self.config.decimals} decimals"
            ) from exc

    async def check_reserve(self, amount: Decimal) -> ReserveCheck:
        return ReserveCheck(allowed=True)

    async def transfer(
        self,
        user_id: Optional[int],
        to: str,
        amount: Decimal,
        *,
        reference: str,
    ) -> TransferReceipt:
        value = self.quantize(amount)
        if value <= 0:
            raise TransferFailedError(
                f"{self.route} transfer of {amount} rounds to zero at {self.config.decimals} decimals"
            )
        order = TransferOrder(
            blockchain=self.blockchain,
            source=self.config.hot_wallet,
            to=to,
            amount=value,
            currency=self.currency,
            reference=reference,
            asset=self.asset,
            user_id=user_id,
        )
        self._logger.info("Submitting %s transfer %s: %s to %s", self.route, reference, value, to)
        tx_hash = await self._signer.submit_transfer(order)
        return TransferReceipt(tx_hash=tx_hash, success=True)

    async def lookup(self, reference: str) -> Optional[TransferReceipt]:
        return await self._signer.find_transfer(self.blockchain, reference)

    async def _hot_balance(self, asset: Optional[str] = None) -> Decimal:
        return await self._signer.get_balance(self.blockchain, self.config.hot_wallet, asset)


class NativeAdapter(ChainAdapter):
    """Transfers the chain's own coin."""

    @property
    def asset(self) -> Optional[str]:
        return None


class TokenAdapter(ChainAdapter):
    """Transfers a token contract (TRC-20, ERC-20, SPL)."""

    def __init__(
        self,
        config: ChainConfig,
        signer: SignerClient,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not config.token_address:
            raise ValueError(f"{type(self).__name__} requires a token address")
        super().__init__(config, signer, logger=logger)

    @property
    def asset(self) -> Optional[str]:
        return self.config.token_address


class TronNativeAdapter(NativeAdapter):
    blockchain = Blockchain.TRON
    currency = "TRX"


class TronTokenAdapter(TokenAdapter):
    blockchain = Blockchain.TRON
    currency = "USDT"


class EthereumNativeAdapter(NativeAdapter):
    blockchain = Blockchain.ETHEREUM
    currency = "ETH"


class EthereumTokenAdapter(TokenAdapter):
    blockchain = Blockchain.ETHEREUM
    currency = "USDT"


class SolanaNativeAdapter(NativeAdapter):
    """SOL transfers; the hot wallet must keep rent plus a fee buffer."""

    blockchain = Blockchain.SOLANA
    currency = "SOL"
    reserve_constrained = True

    async def check_reserve(self, amount: Decimal) -> ReserveCheck:
        balance = await self._hot_balance()
        required = amount + self.config.min_reserve + self.config.fee_reserve
        if balance < required:
            self._logger.warning(
                "SOL hot wallet holds %s, needs %s for a %s transfer", balance, required, amount
            )
            return ReserveCheck(allowed=False, reason="insufficient hot wallet balance")
        return ReserveCheck(allowed=True)


class SolanaTokenAdapter(TokenAdapter):
    """USDC (SPL) transfers; fees are paid in SOL from the same wallet."""

    blockchain = Blockchain.SOLANA
    currency = "USDC"
    reserve_constrained = True

    async def check_reserve(self, amount: Decimal) -> ReserveCheck:
        token_balance = await self._hot_balance(self.asset)
        if token_balance < amount:
            self._logger.warning(
                "USDC hot wallet holds %s, needs %s", token_balance, amount
            )
            return ReserveCheck(allowed=False, reason="insufficient hot wallet balance")
        sol_balance = await self._hot_balance()
        if sol_balance < self.config.fee_reserve:
            self._logger.warning(
                "USDC hot wallet holds %s SOL, needs %s for fees", sol_balance, self.config.fee_reserve
            )
            return ReserveCheck(allowed=False, reason="insufficient SOL for transaction fees")
        return ReserveCheck(allowed=True)


class AdapterRegistry:
    """Static mapping of routes to adapters, built once at startup."""

    def __init__(self, adapters: Optional[List[ChainAdapter]] = None) -> None:
        self._adapters: Dict[Tuple[Blockchain, str], ChainAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ChainAdapter) -> None:
        key = (adapter.blockchain, adapter.currency.upper())
        if key in self._adapters:
            raise ValueError(f"Route {adapter.route} registered twice")
        self._adapters[key] = adapter

    def resolve(self, blockchain: str, currency: str) -> ChainAdapter:
        try:
            chain = Blockchain(blockchain)
        except ValueError as exc:
            raise UnsupportedRouteError(f"Unknown blockchain {blockchain!r}") from exc
        adapter = self._adapters.get((chain, currency.upper()))
        if adapter is None:
            raise UnsupportedRouteError(f"No adapter for {blockchain}:{currency}")
        return adapter

    def routes(self) -> List[str]:
        return sorted(adapter.route for adapter in self._adapters.values())

    def __iter__(self) -> Iterator[ChainAdapter]:
        return iter(self._adapters.values())


_DEFAULT_DECIMALS: Dict[Type[ChainAdapter], int] = {
    TronNativeAdapter: 6,
    TronTokenAdapter: 6,
    EthereumNativeAdapter: 18,
    EthereumTokenAdapter: 6,
    SolanaNativeAdapter: 9,
    SolanaTokenAdapter: 6,
}


def build_registry(settings: "Settings", signer: SignerClient) -> AdapterRegistry:
    """Create the six production routes from configuration."""

    tron = dict(hot_wallet=settings.tron_hot_wallet, accounting_currency="USDT")
    ethereum = dict(hot_wallet=settings.eth_hot_wallet, accounting_currency="USDT")
    solana = dict(
        hot_wallet=settings.sol_hot_wallet,
        accounting_currency="USD",
        min_reserve=settings.sol_min_reserve,
        fee_reserve=settings.sol_fee_reserve,
    )
    routes = [
        (TronNativeAdapter, tron, None),
        (TronTokenAdapter, tron, settings.tron_usdt_contract),
        (EthereumNativeAdapter, ethereum, None),
        (EthereumTokenAdapter, ethereum, settings.eth_usdt_contract),
        (SolanaNativeAdapter, solana, None),
        (SolanaTokenAdapter, solana, settings.sol_usdc_mint),
    ]
    registry = AdapterRegistry()
    for adapter_cls, options, token_address in routes:
        config = ChainConfig(
            decimals=_DEFAULT_DECIMALS[adapter_cls],
            token_address=token_address,
            **options,
        )
        registry.register(adapter_cls(config, signer))
    return registry


__all__ = [
    "AdapterRegistry",
    "ChainAdapter",
    "ChainConfig",
    "EthereumNativeAdapter",
    "EthereumTokenAdapter",
    "NativeAdapter",
    "SolanaNativeAdapter",
    "SolanaTokenAdapter",
    "TokenAdapter",
    "TronNativeAdapter",
    "TronTokenAdapter",
    "build_registry",
]
