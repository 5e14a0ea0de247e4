"""Error taxonomy for settlement attempts."""

from __future__ import annotations


class SettlementError(RuntimeError):
    """Base class for every failure surfaced by the settlement engine."""

    code = "settlement_error"
    retryable = False


class RequestNotFoundError(SettlementError, LookupError):
    """Raised when a request cannot be located."""

    code = "not_found"


class AlreadyProcessedError(SettlementError):
    """Raised when a request is no longer pending or another attempt owns it."""

    code = "already_processed"


class MissingRecipientError(SettlementError):
    """Raised when a request has no destination address."""

    code = "missing_recipient"


class UnsupportedRouteError(SettlementError):
    """Raised when no adapter is registered for a blockchain/currency pair."""

    code = "unsupported_route"


class ConversionUnavailableError(SettlementError):
    """Raised when the price feed cannot supply a rate."""

    code = "conversion_unavailable"
    retryable = True


class ReserveInsufficientError(SettlementError):
    """Raised when the hot wallet cannot cover a transfer."""

    code = "reserve_insufficient"
    retryable = True


class TransferFailedError(SettlementError):
    """Raised when the chain definitively rejected a transfer."""

    code = "transfer_failed"
    retryable = True


class TransferAmbiguousError(SettlementError):
    """Raised when a transfer may or may not have landed on-chain.

    The request stays pending and must be reconciled before any retry.
    """

    code = "transfer_ambiguous"


class InvalidAmountError(SettlementError, ValueError):
    """Raised for non-positive amounts."""

    code = "invalid_amount"


__all__ = [
    "AlreadyProcessedError",
    "ConversionUnavailableError",
    "InvalidAmountError",
    "MissingRecipientError",
    "RequestNotFoundError",
    "ReserveInsufficientError",
    "SettlementError",
    "TransferAmbiguousError",
    "TransferFailedError",
    "UnsupportedRouteError",
]
