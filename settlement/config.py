"""Configuration helpers for the settlement service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

USDT_TRC20_CONTRACT = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"
USDT_ERC20_CONTRACT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
USDC_SPL_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def _parse_int(value: str | None, *, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Expected integer but received {value!r}") from exc


def _parse_float(value: str | None, *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Expected number but received {value!r}") from exc


def _parse_decimal(value: str | None, *, default: Decimal) -> Decimal:
    if value is None or value == "":
        return default
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(f"Expected decimal but received {value!r}") from exc


@dataclass(slots=True)
class Settings:
    """Runtime configuration for the application."""

    database_path: str = "settlement.db"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    signer_endpoint: Optional[str] = None
    signer_api_key: Optional[str] = None
    price_feed_url: str = "https://api.coingecko.com/api/v3"
    price_feed_api_key: Optional[str] = None
    price_cache_ttl: float = 10.0
    conversion_timeout: float = 10.0
    reserve_timeout: float = 10.0
    transfer_timeout: float = 30.0
    alert_webhook_url: Optional[str] = None
    tron_hot_wallet: str = "simulated-tron-hot-wallet"
    tron_usdt_contract: str = USDT_TRC20_CONTRACT
    eth_hot_wallet: str = "simulated-eth-hot-wallet"
    eth_usdt_contract: str = USDT_ERC20_CONTRACT
    sol_hot_wallet: str = "simulated-sol-hot-wallet"
    sol_usdc_mint: str = USDC_SPL_MINT
    sol_min_reserve: Decimal = Decimal("0.00089088")
    sol_fee_reserve: Decimal = Decimal("0.01")

    @property
    def simulated(self) -> bool:
        """Whether transfers go to the in-memory signer."""

        return not self.signer_endpoint

    @classmethod
    def from_env(cls) -> "Settings":
        """Create :class:`Settings` using environment variables."""

        defaults = cls()
        signer_endpoint = os.getenv("SIGNER_ENDPOINT") or None
        hot_wallets = {
            "TRON_HOT_WALLET": os.getenv("TRON_HOT_WALLET"),
            "ETH_HOT_WALLET": os.getenv("ETH_HOT_WALLET"),
            "SOL_HOT_WALLET": os.getenv("SOL_HOT_WALLET"),
        }

        if signer_endpoint:
            missing = [name for name, value in hot_wallets.items() if not value]
            if missing:
                formatted = ", ".join(missing)
                raise ValueError(
                    "SIGNER_ENDPOINT configured but missing required env vars: "
                    f"{formatted}"
                )

        return cls(
            database_path=os.getenv("DATABASE_PATH", defaults.database_path),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
            api_host=os.getenv("API_HOST", defaults.api_host),
            api_port=_parse_int(os.getenv("API_PORT"), default=defaults.api_port) or defaults.api_port,
            signer_endpoint=signer_endpoint,
            signer_api_key=os.getenv("SIGNER_API_KEY"),
            price_feed_url=os.getenv("PRICE_FEED_URL", defaults.price_feed_url),
            price_feed_api_key=os.getenv("PRICE_FEED_API_KEY"),
            price_cache_ttl=_parse_float(os.getenv("PRICE_CACHE_TTL"), default=defaults.price_cache_ttl),
            conversion_timeout=_parse_float(
                os.getenv("CONVERSION_TIMEOUT"), default=defaults.conversion_timeout
            ),
            reserve_timeout=_parse_float(os.getenv("RESERVE_TIMEOUT"), default=defaults.reserve_timeout),
            transfer_timeout=_parse_float(os.getenv("TRANSFER_TIMEOUT"), default=defaults.transfer_timeout),
            alert_webhook_url=os.getenv("ALERT_WEBHOOK_URL") or None,
            tron_hot_wallet=hot_wallets["TRON_HOT_WALLET"] or defaults.tron_hot_wallet,
            tron_usdt_contract=os.getenv("TRON_USDT_CONTRACT", defaults.tron_usdt_contract),
            eth_hot_wallet=hot_wallets["ETH_HOT_WALLET"] or defaults.eth_hot_wallet,
            eth_usdt_contract=os.getenv("ETH_USDT_CONTRACT", defaults.eth_usdt_contract),
            sol_hot_wallet=hot_wallets["SOL_HOT_WALLET"] or defaults.sol_hot_wallet,
            sol_usdc_mint=os.getenv("SOL_USDC_MINT", defaults.sol_usdc_mint),
            sol_min_reserve=_parse_decimal(os.getenv("SOL_MIN_RESERVE"), default=defaults.sol_min_reserve),
            sol_fee_reserve=_parse_decimal(os.getenv("SOL_FEE_RESERVE"), default=defaults.sol_fee_reserve),
        )


__all__ = ["Settings"]
