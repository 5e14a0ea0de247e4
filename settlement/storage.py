"""SQLite persistence for settlement requests and their intents."""

from __future__ import annotations

import asyncio
import math
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import AlreadyProcessedError, RequestNotFoundError
from .models import (
    Blockchain,
    IntentState,
    RequestKind,
    RequestStatus,
    SettlementIntent,
    SettlementRequest,
)

_ACTIVE_INTENT_STATES = (IntentState.OPEN.value, IntentState.AMBIGUOUS.value)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


@dataclass(slots=True)
class RequestPage:
    """A page of requests plus pagination metadata."""

    items: List[SettlementRequest]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


class RequestStore:
    """SQLite-backed store for withdrawals, payouts and settlement intents.

    Every status change is a single conditional ``UPDATE``; the guard lives in
    SQL so that it also holds for other processes sharing the database file.
    """

    def __init__(self, database_path: str) -> None:
        self._database_path = database_path
        self._conn = sqlite3.connect(self._database_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        for kind in RequestKind:
            self._conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {kind.table} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER,
                    to_address TEXT,
                    blockchain TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    status TEXT NOT NULL
                        CHECK (status IN ('pending', 'completed', 'failed')),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    tx_hash TEXT,
                    settled_amount TEXT,
                    settled_currency TEXT,
                    failure_reason TEXT
                )
                """
            )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS settlement_intents (
                kind TEXT NOT NULL,
                request_id INTEGER NOT NULL,
                reference TEXT NOT NULL,
                route TEXT NOT NULL,
                attempts INTEGER NOT NULL,
                state TEXT NOT NULL,
                amount TEXT,
                unit TEXT,
                tx_hash TEXT,
                detail TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (kind, request_id)
            )
            """
        )
        self._conn.commit()

    async def create_request(
        self,
        kind: RequestKind,
        *,
        to: Optional[str],
        currency: str,
        amount: Decimal,
        blockchain: str = Blockchain.TRON.value,
        user_id: Optional[int] = None,
    ) -> SettlementRequest:
        """Persist a new pending request."""

        now = _utcnow()
        payload = {
            "user_id": user_id,
            "to_address": to,
            "blockchain": blockchain,
            "currency": currency,
            "amount": str(amount),
            "status": RequestStatus.PENDING.value,
            "created_at": now,
            "updated_at": now,
        }
        async with self._lock:
            row = await asyncio.to_thread(self._insert_row, kind, payload)
        return self._row_to_request(kind, row)

    async def get_request(self, kind: RequestKind, request_id: int) -> SettlementRequest:
        async with self._lock:
            row = await asyncio.to_thread(self._get_row, kind, request_id)
        if row is None:
            raise RequestNotFoundError(f"Unknown {kind.value}: {request_id}")
        return self._row_to_request(kind, row)

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
        """Return requests newest first, filtered like the admin listing."""

        page = max(page, 1)
        async with self._lock:
            rows, total = await asyncio.to_thread(
                self._select_rows, kind, status, currency, search, page, page_size
            )
        return RequestPage(
            items=[self._row_to_request(kind, row) for row in rows],
            total=total,
            page=page,
            page_size=page_size,
        )

    async def mark_completed(
        self,
        kind: RequestKind,
        request_id: int,
        *,
        tx_hash: Optional[str] = None,
        settled_amount: Optional[Decimal] = None,
        settled_currency: Optional[str] = None,
    ) -> SettlementRequest:
        """Move a pending request to completed and confirm its intent.

        Raises :class:`AlreadyProcessedError` when the request is not pending
        at the moment of the update.
        """

        fields = {
            "status": RequestStatus.COMPLETED.value,
            "tx_hash": tx_hash,
            "settled_amount": str(settled_amount) if settled_amount is not None else None,
            "settled_currency": settled_currency,
        }
        async with self._lock:
            row = await asyncio.to_thread(self._complete_row, kind, request_id, fields)
        return self._row_to_request(kind, row)

    async def mark_failed(self, kind: RequestKind, request_id: int, reason: str) -> SettlementRequest:
        """Move a pending request with no active intent to failed."""

        async with self._lock:
            row = await asyncio.to_thread(self._fail_row, kind, request_id, reason)
        return self._row_to_request(kind, row)

    async def claim_intent(
        self, kind: RequestKind, request_id: int, *, route: str
    ) -> Optional[SettlementIntent]:
        """Open a settlement attempt for a pending request.

        Returns ``None`` when the request is not pending or another attempt
        already holds (or left ambiguous) the intent.
        """

        async with self._lock:
            row = await asyncio.to_thread(self._claim_row, kind, request_id, route)
        return self._row_to_intent(row) if row is not None else None

    async def get_intent(self, kind: RequestKind, request_id: int) -> Optional[SettlementIntent]:
        async with self._lock:
            row = await asyncio.to_thread(self._get_intent_row, kind, request_id)
        return self._row_to_intent(row) if row is not None else None

    async def list_intents(
        self, *, state: Optional[IntentState] = None, limit: int = 50
    ) -> List[SettlementIntent]:
        async with self._lock:
            rows = await asyncio.to_thread(self._select_intent_rows, state, limit)
        return [self._row_to_intent(row) for row in rows]

    async def record_submission(
        self, kind: RequestKind, request_id: int, *, amount: Decimal, unit: str
    ) -> SettlementIntent:
        """Store the converted amount on an open intent right before submission."""

        return await self._update_intent(
            kind,
            request_id,
            {"amount": str(amount), "unit": unit},
            from_states=(IntentState.OPEN.value,),
        )

    async def release_intent(self, kind: RequestKind, request_id: int, detail: str) -> SettlementIntent:
        """Give up an attempt that has no pending irreversible effect."""

        return await self._update_intent(
            kind,
            request_id,
            {"state": IntentState.RELEASED.value, "detail": detail},
            from_states=_ACTIVE_INTENT_STATES,
        )

    async def flag_ambiguous(
        self,
        kind: RequestKind,
        request_id: int,
        detail: str,
        *,
        tx_hash: Optional[str] = None,
    ) -> SettlementIntent:
        """Mark an open attempt as needing reconciliation against the chain."""

        fields: Dict[str, object] = {"state": IntentState.AMBIGUOUS.value, "detail": detail}
        if tx_hash:
            fields["tx_hash"] = tx_hash
        return await self._update_intent(
            kind, request_id, fields, from_states=(IntentState.OPEN.value,)
        )

    async def cleanup(self) -> None:
        """Close the underlying database connection."""

        async with self._lock:
            await asyncio.to_thread(self._conn.close)

    async def _update_intent(
        self,
        kind: RequestKind,
        request_id: int,
        fields: Dict[str, object],
        *,
        from_states: Sequence[str],
    ) -> SettlementIntent:
        async with self._lock:
            row = await asyncio.to_thread(
                self._update_intent_row, kind, request_id, fields, from_states
            )
        return self._row_to_intent(row)

    # Internal helpers -------------------------------------------------

    def _insert_row(self, kind: RequestKind, payload: Dict[str, object]) -> sqlite3.Row:
        columns = ", ".join(payload.keys())
        placeholders = ", ".join(["?"] * len(payload))
        with self._conn:
            cursor = self._conn.execute(
                f"INSERT INTO {kind.table} ({columns}) VALUES ({placeholders})",
                list(payload.values()),
            )
        return self._get_row(kind, cursor.lastrowid)

    def _get_row(self, kind: RequestKind, request_id: int) -> Optional[sqlite3.Row]:
        cursor = self._conn.execute(
            f"SELECT * FROM {kind.table} WHERE id = ?", (request_id,)
        )
        return cursor.fetchone()

    def _require_row(self, kind: RequestKind, request_id: int) -> sqlite3.Row:
        row = self._get_row(kind, request_id)
        if row is None:
            raise RequestNotFoundError(f"Unknown {kind.value}: {request_id}")
        return row

    def _select_rows(
        self,
        kind: RequestKind,
        status: Optional[RequestStatus],
        currency: Optional[str],
        search: Optional[str],
        page: int,
        page_size: int,
    ) -> Tuple[Sequence[sqlite3.Row], int]:
        clauses: List[str] = []
        values: List[object] = []
        if status is not None:
            clauses.append("status = ?")
            values.append(status.value)
        if currency and currency.lower() != "all":
            clauses.append("currency = ?")
            values.append(currency)
        if search:
            # Numeric searches match the owner; everything matches on address.
            user_id = int(search) if search.isdigit() else -1
            clauses.append("(user_id = ? OR to_address LIKE ?)")
            values.extend([user_id, f"%{search}%"])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        total = self._conn.execute(
            f"SELECT COUNT(*) FROM {kind.table} {where}", values
        ).fetchone()[0]
        rows = self._conn.execute(
            f"SELECT * FROM {kind.table} {where} ORDER BY id DESC LIMIT ? OFFSET ?",
            [*values, page_size, (page - 1) * page_size],
        ).fetchall()
        return rows, total

    def _complete_row(
        self, kind: RequestKind, request_id: int, fields: Dict[str, object]
    ) -> sqlite3.Row:
        now = _utcnow()
        assignments = ", ".join(f"{key} = ?" for key in fields)
        with self._conn:
            cursor = self._conn.execute(
                f"""
                UPDATE {kind.table} SET {assignments}, updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                [*fields.values(), now, request_id],
            )
            if cursor.rowcount == 0:
                row = self._require_row(kind, request_id)
                raise AlreadyProcessedError(
                    f"{kind.value.title()} {request_id} already processed ({row['status']})"
                )
            self._conn.execute(
                """
                UPDATE settlement_intents
                SET state = ?, tx_hash = COALESCE(?, tx_hash), updated_at = ?
                WHERE kind = ? AND request_id = ?
                """,
                (IntentState.CONFIRMED.value, fields.get("tx_hash"), now, kind.value, request_id),
            )
        return self._get_row(kind, request_id)

    def _fail_row(self, kind: RequestKind, request_id: int, reason: str) -> sqlite3.Row:
        with self._conn:
            cursor = self._conn.execute(
                f"""
                UPDATE {kind.table} SET status = ?, failure_reason = ?, updated_at = ?
                WHERE id = ? AND status = 'pending' AND NOT EXISTS (
                    SELECT 1 FROM settlement_intents
                    WHERE kind = ? AND request_id = ? AND state IN (?, ?)
                )
                """,
                (
                    RequestStatus.FAILED.value,
                    reason,
                    _utcnow(),
                    request_id,
                    kind.value,
                    request_id,
                    *_ACTIVE_INTENT_STATES,
                ),
            )
        if cursor.rowcount == 0:
            row = self._require_row(kind, request_id)
            if row["status"] != RequestStatus.PENDING.value:
                raise AlreadyProcessedError(
                    f"{kind.value.title()} {request_id} already processed ({row['status']})"
                )
            raise AlreadyProcessedError(
                f"{kind.value.title()} {request_id} has a settlement attempt in progress"
            )
        return self._get_row(kind, request_id)

    def _claim_row(self, kind: RequestKind, request_id: int, route: str) -> Optional[sqlite3.Row]:
        now = _utcnow()
        with self._conn:
            cursor = self._conn.execute(
                f"""
                INSERT INTO settlement_intents (
                    kind, request_id, reference, route, attempts, state, created_at, updated_at
                )
                SELECT ?, ?, ?, ?, 1, ?, ?, ?
                WHERE EXISTS (
                    SELECT 1 FROM {kind.table} WHERE id = ? AND status = 'pending'
                )
                ON CONFLICT (kind, request_id) DO UPDATE SET
                    attempts = attempts + 1,
                    reference = kind || ':' || request_id || ':' || (attempts + 1),
                    route = excluded.route,
                    state = excluded.state,
                    amount = NULL,
                    unit = NULL,
                    tx_hash = NULL,
                    detail = NULL,
                    updated_at = excluded.updated_at
                WHERE state = ?
                """,
                (
                    kind.value,
                    request_id,
                    f"{kind.value}:{request_id}:1",
                    route,
                    IntentState.OPEN.value,
                    now,
                    now,
                    request_id,
                    IntentState.RELEASED.value,
                ),
            )
        if cursor.rowcount == 0:
            return None
        return self._get_intent_row(kind, request_id)

    def _get_intent_row(self, kind: RequestKind, request_id: int) -> Optional[sqlite3.Row]:
        cursor = self._conn.execute(
            "SELECT * FROM settlement_intents WHERE kind = ? AND request_id = ?",
            (kind.value, request_id),
        )
        return cursor.fetchone()

    def _select_intent_rows(
        self, state: Optional[IntentState], limit: int
    ) -> Sequence[sqlite3.Row]:
        if state is None:
            cursor = self._conn.execute(
                "SELECT * FROM settlement_intents ORDER BY updated_at DESC LIMIT ?",
                (limit,),
            )
        else:
            cursor = self._conn.execute(
                """
                SELECT * FROM settlement_intents
                WHERE state = ?
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (state.value, limit),
            )
        return cursor.fetchall()

    def _update_intent_row(
        self,
        kind: RequestKind,
        request_id: int,
        fields: Dict[str, object],
        from_states: Sequence[str],
    ) -> sqlite3.Row:
        assignments = ", ".join(f"{key} = ?" for key in fields)
        state_placeholders = ", ".join(["?"] * len(from_states))
        with self._conn:
            cursor = self._conn.execute(
                f"""
                UPDATE settlement_intents SET {assignments}, updated_at = ?
                WHERE kind = ? AND request_id = ? AND state IN ({state_placeholders})
                """,
                [*fields.values(), _utcnow(), kind.value, request_id, *from_states],
            )
        row = self._get_intent_row(kind, request_id)
        if cursor.rowcount == 0:
            current = row["state"] if row is not None else "missing"
            raise AlreadyProcessedError(
                f"Intent for {kind.value} {request_id} is {current}, expected one of {', '.join(from_states)}"
            )
        return row

    def _row_to_request(self, kind: RequestKind, row: sqlite3.Row) -> SettlementRequest:
        return SettlementRequest(
            id=row["id"],
            kind=kind,
            user_id=row["user_id"],
            to=row["to_address"],
            blockchain=row["blockchain"],
            currency=row["currency"],
            amount=Decimal(row["amount"]),
            status=RequestStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            tx_hash=row["tx_hash"],
            settled_amount=_to_decimal(row["settled_amount"]),
            settled_currency=row["settled_currency"],
            failure_reason=row["failure_reason"],
        )

    def _row_to_intent(self, row: sqlite3.Row) -> SettlementIntent:
        return SettlementIntent(
            kind=RequestKind(row["kind"]),
            request_id=row["request_id"],
            reference=row["reference"],
            route=row["route"],
            attempts=row["attempts"],
            state=IntentState(row["state"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            amount=_to_decimal(row["amount"]),
            unit=row["unit"],
            tx_hash=row["tx_hash"],
            detail=row["detail"],
        )


__all__ = ["RequestPage", "RequestStore"]
