"""Signer client abstractions: the boundary to chain SDKs and custody."""

from __future__ import annotations

import abc
import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple
from uuid import uuid4

import aiohttp
from yarl import URL

from .errors import TransferAmbiguousError, TransferFailedError
from .models import Blockchain, TransferOrder, TransferReceipt


class SignerError(RuntimeError):
    """Raised when the signer cannot answer a read-only query."""


class SignerClient(abc.ABC):
    """Abstract base class for the service that holds hot wallet keys."""

    @abc.abstractmethod
    async def get_balance(
        self, blockchain: Blockchain, address: str, asset: Optional[str] = None
    ) -> Decimal:
        """Return the balance of ``address`` in the native unit or in ``asset``."""

    @abc.abstractmethod
    async def submit_transfer(self, order: TransferOrder) -> str:
        """Broadcast a transfer and return its transaction hash.

        Raises :class:`TransferFailedError` when the transfer definitely did
        not happen and :class:`TransferAmbiguousError` when the outcome is
        unknown.
        """

    @abc.abstractmethod
    async def find_transfer(
        self, blockchain: Blockchain, reference: str
    ) -> Optional[TransferReceipt]:
        """Look up a transfer previously submitted under ``reference``."""

    async def close(self) -> None:
        """Release any network resources held by the client."""


class DummySignerClient(SignerClient):
    """A stand-in signer that simulates balances and transfers in memory."""

    def __init__(
        self,
        *,
        balances: Optional[Mapping[Tuple[Blockchain, str, Optional[str]], Decimal]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._balances: Dict[Tuple[Blockchain, str, Optional[str]], Decimal] = dict(balances or {})
        self._transfers: Dict[Tuple[Blockchain, str], TransferReceipt] = {}
        self._logger = logger or logging.getLogger(__name__)

    def set_balance(
        self, blockchain: Blockchain, address: str, amount: Decimal, asset: Optional[str] = None
    ) -> None:
        self._balances[(blockchain, address, asset)] = Decimal(amount)

    async def get_balance(
        self, blockchain: Blockchain, address: str, asset: Optional[str] = None
    ) -> Decimal:
        return self._balances.get((blockchain, address, asset), Decimal("0"))

    async def submit_transfer(self, order: TransferOrder) -> str:
        await asyncio.sleep(0.05)
        tx_hash = f"dummy-{uuid4().hex}"
        key = (order.blockchain, order.source, order.asset)
        if key in self._balances:
            self._balances[key] -= order.amount
        self._transfers[(order.blockchain, order.reference)] = TransferReceipt(
            tx_hash=tx_hash, success=True
        )
        self._logger.info(
            "Simulated %s transfer of %s %s to %s -> %s",
            order.blockchain.value,
            order.amount,
            order.currency,
            order.to,
            tx_hash,
        )
        return tx_hash

    async def find_transfer(
        self, blockchain: Blockchain, reference: str
    ) -> Optional[TransferReceipt]:
        return self._transfers.get((blockchain, reference))


class HTTPSignerClient(SignerClient):
    """Client of a custody signer service exposing one REST API per chain."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        read_timeout: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not base_url:
            raise ValueError("Signer endpoint must be provided")
        base = URL(base_url)
        if not base.scheme:
            raise ValueError("Signer endpoint must include a scheme (e.g. https://)")
        self._base = base
        self._api_key = api_key
        self._timeout = timeout
        self._read_timeout = read_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._logger = logger or logging.getLogger(__name__)

    def _chain_url(self, blockchain: Blockchain) -> URL:
        return self._base / "chains" / blockchain.value.lower()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._headers())
        return self._session

    async def get_balance(
        self, blockchain: Blockchain, address: str, asset: Optional[str] = None
    ) -> Decimal:
        url = self._chain_url(blockchain) / "balances" / address
        params = {"asset": asset} if asset else {}
        data = await self._get_json(url, params=params)
        if data is None or "balance" not in data:
            raise SignerError(f"Signer returned no balance for {address} on {blockchain.value}")
        return Decimal(str(data["balance"]))

    async def submit_transfer(self, order: TransferOrder) -> str:
        payload: Dict[str, Any] = {
            "reference": order.reference,
            "from": order.source,
            "to": order.to,
            "amount": str(order.amount),
            "currency": order.currency,
            "asset": order.asset,
            "user_id": order.user_id,
        }
        url = self._chain_url(order.blockchain) / "transfers"
        timeout = aiohttp.ClientTimeout(total=self._timeout)

        try:
            session = self._get_session()
            async with session.post(url, json=payload, timeout=timeout) as response:
                if 400 <= response.status < 500:
                    body = await response.text()
                    raise TransferFailedError(
                        f"Signer rejected transfer {order.reference} with status {response.status}: {body.strip()}"
                    )
                if response.status >= 500:
                    body = await response.text()
                    raise TransferAmbiguousError(
                        f"Signer errored on transfer {order.reference} with status {response.status}: {body.strip()}"
                    )
                data = await response.json(content_type=None)
        except aiohttp.ClientConnectorError as exc:
            raise TransferFailedError(
                f"Could not reach signer for transfer {order.reference}"
            ) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransferAmbiguousError(
                f"Lost contact with signer while submitting transfer {order.reference}"
            ) from exc

        if data.get("success") is False:
            raise TransferFailedError(
                f"Chain rejected transfer {order.reference}: {data.get('error') or 'unknown error'}"
            )
        tx_hash = data.get("txHash") or data.get("tx_hash") or data.get("transaction_id")
        if not tx_hash:
            raise TransferAmbiguousError(
                f"Signer response for transfer {order.reference} missing transaction hash"
            )

        tx_hash = str(tx_hash)
        self._logger.info(
            "Signer accepted %s transfer %s -> %s", order.blockchain.value, order.reference, tx_hash
        )
        return tx_hash

    async def find_transfer(
        self, blockchain: Blockchain, reference: str
    ) -> Optional[TransferReceipt]:
        url = self._chain_url(blockchain) / "transfers" / reference
        data = await self._get_json(url)
        if data is None:
            return None
        return TransferReceipt(
            tx_hash=data.get("txHash") or data.get("tx_hash"),
            success=bool(data.get("success")),
            detail=data.get("error"),
        )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _get_json(
        self, url: URL, *, params: Optional[Dict[str, str]] = None
    ) -> Optional[Dict[str, Any]]:
        timeout = aiohttp.ClientTimeout(total=self._read_timeout)
        try:
            session = self._get_session()
            async with session.get(url, params=params, timeout=timeout) as response:
                if response.status == 404:
                    return None
                if response.status >= 400:
                    body = await response.text()
                    raise SignerError(
                        f"Signer request failed with status {response.status}: {body.strip()}"
                    )
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise SignerError("Failed to contact signer") from exc


__all__ = [
    "DummySignerClient",
    "HTTPSignerClient",
    "SignerClient",
    "SignerError",
]
