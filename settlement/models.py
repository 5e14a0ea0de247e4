"""Shared data models for settlement handling."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class RequestKind(str, Enum):
    """The two kinds of value-out requests the engine settles."""

    WITHDRAWAL = "withdrawal"
    PAYOUT = "payout"

    @property
    def table(self) -> str:
        return f"{self.value}s"


class RequestStatus(str, Enum):
    """Lifecycle states of a settlement request."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Blockchain(str, Enum):
    """Networks the engine can transfer on."""

    TRON = "Tron"
    ETHEREUM = "Ethereum"
    SOLANA = "Solana"


class IntentState(str, Enum):
    """States of the outbox record guarding a settlement attempt."""

    OPEN = "open"
    RELEASED = "released"
    AMBIGUOUS = "ambiguous"
    CONFIRMED = "confirmed"


@dataclass(slots=True)
class SettlementRequest:
    """A withdrawal request or a payout awaiting settlement."""

    id: int
    kind: RequestKind
    user_id: Optional[int]
    to: Optional[str]
    blockchain: str
    currency: str
    amount: Decimal
    status: RequestStatus
    created_at: datetime
    updated_at: datetime
    tx_hash: Optional[str] = None
    settled_amount: Optional[Decimal] = None
    settled_currency: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status is RequestStatus.PENDING

    def to_api_dict(self) -> Dict[str, Any]:
        """Serialize the request to a JSON-friendly representation."""

        return {
            "id": self.id,
            "kind": self.kind.value,
            "user_id": self.user_id,
            "to": self.to,
            "blockchain": self.blockchain,
            "currency": self.currency,
            "amount": str(self.amount),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "tx_hash": self.tx_hash,
            "settled_amount": str(self.settled_amount) if self.settled_amount is not None else None,
            "settled_currency": self.settled_currency,
            "failure_reason": self.failure_reason,
        }


@dataclass(slots=True)
class SettlementIntent:
    """Outbox row written before any irreversible effect is attempted."""

    kind: RequestKind
    request_id: int
    reference: str
    route: str
    attempts: int
    state: IntentState
    created_at: datetime
    updated_at: datetime
    amount: Optional[Decimal] = None
    unit: Optional[str] = None
    tx_hash: Optional[str] = None
    detail: Optional[str] = None

    def to_api_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "request_id": self.request_id,
            "reference": self.reference,
            "route": self.route,
            "attempts": self.attempts,
            "state": self.state.value,
            "amount": str(self.amount) if self.amount is not None else None,
            "unit": self.unit,
            "tx_hash": self.tx_hash,
            "detail": self.detail,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class ReserveCheck:
    """Outcome of a pre-flight liquidity check."""

    allowed: bool
    reason: Optional[str] = None


@dataclass(slots=True, frozen=True)
class TransferReceipt:
    """What the chain reported for a submitted transfer."""

    tx_hash: Optional[str]
    success: bool
    detail: Optional[str] = None


@dataclass(slots=True, frozen=True)
class TransferOrder:
    """A fully resolved transfer handed to the signer."""

    blockchain: Blockchain
    source: str
    to: str
    amount: Decimal
    currency: str
    reference: str
    asset: Optional[str] = None
    user_id: Optional[int] = None


@dataclass(slots=True, frozen=True)
class SettlementEvent:
    """Notification published by the manager after each settlement outcome."""

    name: str
    request: SettlementRequest
    detail: Optional[str] = None


__all__ = [
    "Blockchain",
    "IntentState",
    "RequestKind",
    "RequestStatus",
    "ReserveCheck",
    "SettlementEvent",
    "SettlementIntent",
    "SettlementRequest",
    "TransferOrder",
    "TransferReceipt",
]
