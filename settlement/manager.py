"""High-level orchestration of withdrawal and payout settlement."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncContextManager, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .chains import AdapterRegistry, ChainAdapter
from .errors import (
    AlreadyProcessedError,
    InvalidAmountError,
    MissingRecipientError,
    ReserveInsufficientError,
    SettlementError,
    TransferAmbiguousError,
    TransferFailedError,
)
from .ledger import BalanceLedger
from .models import (
    IntentState,
    RequestKind,
    RequestStatus,
    SettlementEvent,
    SettlementIntent,
    SettlementRequest,
)
from .rates import RateConverter
from .signer import SignerError
from .storage import RequestPage, RequestStore

Logger = logging.Logger
SettlementListener = Callable[[SettlementEvent], Awaitable[None] | None]

LEDGER_ROUTE = "ledger"


class SettlementManager:
    """Coordinate request state, conversion, reserve checks and transfers.

    A settlement attempt first claims the request's intent row. Only the
    claimant may convert, check reserves and transfer; everyone else gets
    :class:`AlreadyProcessedError`. Once claimed, the attempt runs shielded
    from caller cancellation so it always ends released, ambiguous or
    confirmed.
    """

    def __init__(
        self,
        store: RequestStore,
        ledger: BalanceLedger,
        registry: AdapterRegistry,
        converter: RateConverter,
        *,
        reserve_timeout: float = 10.0,
        stale_after: float = 300.0,
        logger: Optional[Logger] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.registry = registry
        self.converter = converter
        self._reserve_timeout = reserve_timeout
        self._stale_after = timedelta(seconds=stale_after)
        self._listeners: List[SettlementListener] = []
        self._listener_lock = asyncio.Lock()
        self._route_locks: Dict[str, asyncio.Lock] = {}
        self._inflight: Set[Tuple[RequestKind, int]] = set()
        self._logger = logger or logging.getLogger(__name__)

    def add_listener(self, listener: SettlementListener) -> None:
        self._listeners.append(listener)

    async def process_withdraw(self, request_id: int) -> SettlementRequest:
        """Settle a withdrawal request on-chain."""

        request = await self._load_pending(RequestKind.WITHDRAWAL, request_id)
        adapter = self.registry.resolve(request.blockchain, request.currency)
        return await self._settle_on_chain(request, adapter)

    async def process_payout(self, request_id: int) -> SettlementRequest:
        """Settle a payout: credit the owner if there is one, else transfer."""

        request = await self._load_pending(RequestKind.PAYOUT, request_id)
        if request.user_id is not None:
            return await self._settle_to_ledger(request)
        adapter = self.registry.resolve(request.blockchain, request.currency)
        return await self._settle_on_chain(request, adapter)

    async def reconcile(self, kind: RequestKind, request_id: int) -> SettlementRequest:
        """Resolve an ambiguous or abandoned attempt against its side effect.

        A confirmed effect completes the request; a missing or failed one
        releases the intent so the request can be processed again.
        """

        request = await self.store.get_request(kind, request_id)
        intent = await self.store.get_intent(kind, request_id)
        if not request.is_pending or intent is None:
            return request
        if intent.state is IntentState.RELEASED:
            return request
        if intent.state is IntentState.OPEN:
            if (kind, request_id) in self._inflight or not self._is_stale(intent):
                raise AlreadyProcessedError(
                    f"{kind.value.title()} {request_id} has a settlement attempt in progress"
                )

        if intent.route == LEDGER_ROUTE:
            applied = await self.ledger.has_entry(intent.reference)
            if applied:
                return await self._finish_reconciled(request, intent, tx_hash=None)
            return await self._release_reconciled(request, "ledger credit was never applied")

        if intent.amount is None:
            # Never reached submission.
            return await self._release_reconciled(request, "attempt ended before submission")

        adapter = self.registry.resolve(request.blockchain, request.currency)
        try:
            receipt = await adapter.lookup(intent.reference)
        except SignerError as exc:
            raise TransferAmbiguousError(
                f"Cannot confirm transfer {intent.reference} yet: {exc}"
            ) from exc

        if receipt is not None and receipt.success:
            return await self._finish_reconciled(request, intent, tx_hash=receipt.tx_hash)
        if receipt is not None:
            detail = receipt.detail or "chain reported the transfer as failed"
        else:
            detail = "no transfer found for reference"
        return await self._release_reconciled(request, f"{intent.reference}: {detail}")

    async def reject_request(
        self, kind: RequestKind, request_id: int, *, reason: str
    ) -> SettlementRequest:
        rejected = await self.store.mark_failed(kind, request_id, reason)
        self._logger.info("%s %s rejected: %s", kind.value.title(), request_id, reason)
        await self._notify(SettlementEvent("rejected", rejected, reason))
        return rejected

    async def get_request(self, kind: RequestKind, request_id: int) -> SettlementRequest:
        return await self.store.get_request(kind, request_id)

    async def list_requests(
        self,
        kind: RequestKind,
        *,
        status: Optional[RequestStatus] = None,
        currency: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> RequestPage:
        return await self.store.list_requests(
            kind, status=status, currency=currency, search=search, page=page, page_size=page_size
        )

    async def list_intents(self, *, state: Optional[IntentState] = None, limit: int = 50) -> List[SettlementIntent]:
        return await self.store.list_intents(state=state, limit=limit)

    # Settlement paths -------------------------------------------------

    async def _load_pending(self, kind: RequestKind, request_id: int) -> SettlementRequest:
        request = await self.store.get_request(kind, request_id)
        if not request.is_pending:
            raise AlreadyProcessedError(
                f"{kind.value.title()} {request_id} already processed ({request.status.value})"
            )
        if not request.to:
            raise MissingRecipientError(f"{kind.value.title()} {request_id} has no recipient address")
        return request

    async def _claim(self, request: SettlementRequest, route: str) -> SettlementIntent:
        intent = await self.store.claim_intent(request.kind, request.id, route=route)
        if intent is not None:
            self._logger.info(
                "Claimed %s %s via %s (attempt %s)", request.kind.value, request.id, route, intent.attempts
            )
            return intent
        existing = await self.store.get_intent(request.kind, request.id)
        if existing is not None and existing.state is IntentState.AMBIGUOUS:
            raise TransferAmbiguousError(
                f"{request.kind.value.title()} {request.id} awaits reconciliation of {existing.reference}"
            )
        raise AlreadyProcessedError(
            f"{request.kind.value.title()} {request.id} already processed or in progress"
        )

    async def _settle_to_ledger(self, request: SettlementRequest) -> SettlementRequest:
        intent = await self._claim(request, LEDGER_ROUTE)
        return await self._shielded(request, self._credit_attempt(request, intent))

    async def _settle_on_chain(
        self, request: SettlementRequest, adapter: ChainAdapter
    ) -> SettlementRequest:
        intent = await self._claim(request, adapter.route)
        return await self._shielded(request, self._transfer_attempt(request, adapter, intent))

    async def _shielded(
        self, request: SettlementRequest, attempt: Awaitable[SettlementRequest]
    ) -> SettlementRequest:
        key = (request.kind, request.id)
        self._inflight.add(key)

        async def _run() -> SettlementRequest:
            try:
                return await attempt
            finally:
                self._inflight.discard(key)

        task = asyncio.ensure_future(_run())
        # The caller may be gone by the time the attempt fails.
        task.add_done_callback(self._retrieve_outcome)
        return await asyncio.shield(task)

    def _retrieve_outcome(self, task: "asyncio.Future[SettlementRequest]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.debug("Settlement attempt ended with %r", exc)

    async def _credit_attempt(
        self, request: SettlementRequest, intent: SettlementIntent
    ) -> SettlementRequest:
        assert request.user_id is not None
        try:
            balance = await self.ledger.credit(
                request.user_id, request.currency, request.amount, reference=intent.reference
            )
        except SettlementError as exc:
            await self._release(request, str(exc))
            raise
        except Exception as exc:
            # The credit is a single transaction; nothing was applied.
            self._logger.exception("Ledger credit failed for payout %s", request.id)
            await self._release(request, f"ledger credit failed: {exc}")
            raise TransferFailedError(f"Ledger credit for payout {request.id} failed") from exc

        try:
            completed = await self.store.mark_completed(
                request.kind,
                request.id,
                settled_amount=request.amount,
                settled_currency=request.currency,
            )
        except Exception as exc:
            self._logger.exception(
                "Payout %s credited but status update failed", request.id
            )
            await self._flag(request, "ledger credited but status update failed")
            raise TransferAmbiguousError(
                f"Payout {request.id} was credited but its status was not saved"
            ) from exc

        self._logger.info(
            "Payout %s credited %s %s to user %s (balance %s)",
            request.id,
            request.amount,
            request.currency,
            request.user_id,
            balance,
        )
        await self._notify(SettlementEvent("completed", completed))
        return completed

    async def _transfer_attempt(
        self,
        request: SettlementRequest,
        adapter: ChainAdapter,
        intent: SettlementIntent,
    ) -> SettlementRequest:
        async with self._route_guard(adapter):
            try:
                amount = adapter.quantize(await self._convert(request, adapter))
                if amount <= 0:
                    raise InvalidAmountError(
                        f"{request.amount} {adapter.accounting_currency} is below one {adapter.unit} unit"
                    )
                await self._check_reserve(request, adapter, amount)
                await self.store.record_submission(
                    request.kind, request.id, amount=amount, unit=adapter.unit
                )
            except SettlementError as exc:
                await self._release(request, str(exc))
                raise
            except Exception as exc:
                self._logger.exception(
                    "Unexpected error preparing %s %s", request.kind.value, request.id
                )
                await self._release(request, f"unexpected error before submission: {exc}")
                raise TransferFailedError(
                    f"{request.kind.value.title()} {request.id} could not be prepared for transfer"
                ) from exc

            # Past this point the transfer may reach the chain.
            try:
                receipt = await adapter.transfer(
                    request.user_id, request.to, amount, reference=intent.reference
                )
            except TransferFailedError as exc:
                await self._release(request, str(exc))
                raise
            except TransferAmbiguousError as exc:
                await self._flag(request, str(exc))
                raise
            except Exception as exc:
                self._logger.exception(
                    "Unexpected error submitting %s %s", request.kind.value, request.id
                )
                await self._flag(request, f"unexpected error during submission: {exc}")
                raise TransferAmbiguousError(
                    f"Outcome of transfer {intent.reference} unknown"
                ) from exc

        if not receipt.success:
            detail = receipt.detail or f"{adapter.route} transfer reported failure"
            await self._release(request, detail)
            raise TransferFailedError(detail)

        try:
            completed = await self.store.mark_completed(
                request.kind,
                request.id,
                tx_hash=receipt.tx_hash,
                settled_amount=amount,
                settled_currency=adapter.unit,
            )
        except Exception as exc:
            self._logger.exception(
                "Transfer %s landed but %s %s status update failed",
                receipt.tx_hash,
                request.kind.value,
                request.id,
            )
            await self._flag(
                request, "transfer succeeded but status update failed", tx_hash=receipt.tx_hash
            )
            raise TransferAmbiguousError(
                f"Transfer {receipt.tx_hash} landed but the status was not saved"
            ) from exc

        self._logger.info(
            "%s %s settled: %s %s to %s (%s)",
            request.kind.value.title(),
            request.id,
            amount,
            adapter.unit,
            request.to,
            receipt.tx_hash,
        )
        await self._notify(SettlementEvent("completed", completed, receipt.tx_hash))
        return completed

    async def _convert(self, request: SettlementRequest, adapter: ChainAdapter) -> Decimal:
        if adapter.accounting_currency.upper() == adapter.unit.upper():
            return request.amount
        return await self.converter.convert(request.amount, adapter.accounting_currency, adapter.unit)

    async def _check_reserve(
        self, request: SettlementRequest, adapter: ChainAdapter, amount: Decimal
    ) -> None:
        if not adapter.reserve_constrained:
            return
        try:
            check = await asyncio.wait_for(adapter.check_reserve(amount), timeout=self._reserve_timeout)
        except asyncio.TimeoutError as exc:
            raise ReserveInsufficientError(f"{adapter.route} reserve check timed out") from exc
        except SignerError as exc:
            raise ReserveInsufficientError(f"{adapter.route} reserve check failed: {exc}") from exc
        if not check.allowed:
            raise ReserveInsufficientError(
                check.reason or f"Cannot withdraw {adapter.currency} at this time"
            )

    def _route_guard(self, adapter: ChainAdapter) -> AsyncContextManager[object]:
        # Reserve checks do not reserve funds, so constrained routes run one at a time.
        if not adapter.reserve_constrained:
            return contextlib.nullcontext()
        return self._route_locks.setdefault(adapter.route, asyncio.Lock())

    # Intent bookkeeping -----------------------------------------------

    async def _release(self, request: SettlementRequest, detail: str) -> None:
        self._logger.warning(
            "%s %s left pending: %s", request.kind.value.title(), request.id, detail
        )
        await self.store.release_intent(request.kind, request.id, detail)
        await self._notify(SettlementEvent("retryable_failure", request, detail))

    async def _flag(
        self, request: SettlementRequest, detail: str, *, tx_hash: Optional[str] = None
    ) -> None:
        self._logger.error(
            "%s %s needs reconciliation: %s", request.kind.value.title(), request.id, detail
        )
        try:
            await self.store.flag_ambiguous(request.kind, request.id, detail, tx_hash=tx_hash)
        except Exception:
            self._logger.exception(
                "Could not flag %s %s for reconciliation", request.kind.value, request.id
            )
        await self._notify(SettlementEvent("ambiguous", request, detail))

    async def _finish_reconciled(
        self,
        request: SettlementRequest,
        intent: SettlementIntent,
        *,
        tx_hash: Optional[str],
    ) -> SettlementRequest:
        if intent.route == LEDGER_ROUTE:
            settled_amount, settled_currency = request.amount, request.currency
        else:
            settled_amount, settled_currency = intent.amount, intent.unit
        completed = await self.store.mark_completed(
            request.kind,
            request.id,
            tx_hash=tx_hash or intent.tx_hash,
            settled_amount=settled_amount,
            settled_currency=settled_currency,
        )
        self._logger.info(
            "Reconciled %s %s as completed (%s)", request.kind.value, request.id, intent.reference
        )
        await self._notify(SettlementEvent("completed", completed, tx_hash))
        return completed

    async def _release_reconciled(self, request: SettlementRequest, detail: str) -> SettlementRequest:
        await self.store.release_intent(request.kind, request.id, detail)
        self._logger.info(
            "Reconciled %s %s as not settled: %s", request.kind.value, request.id, detail
        )
        return await self.store.get_request(request.kind, request.id)

    def _is_stale(self, intent: SettlementIntent) -> bool:
        return datetime.now(timezone.utc) - intent.updated_at >= self._stale_after

    async def _notify(self, event: SettlementEvent) -> None:
        async with self._listener_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:  # pragma: no cover - log only
                self._logger.exception("Failed to deliver settlement event %s", event.name)


__all__ = ["LEDGER_ROUTE", "SettlementListener", "SettlementManager"]
