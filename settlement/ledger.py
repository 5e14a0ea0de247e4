"""Internal per-user balances credited by ledger settlements."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from .errors import InvalidAmountError


class BalanceLedger:
    """SQLite-backed balance store.

    Settlement only ever increments balances. Each credit leaves an entry row;
    a credit made with a ``reference`` is applied at most once, which lets an
    interrupted payout be retried without paying the user twice.
    """

    def __init__(self, database_path: str, *, logger: Optional[logging.Logger] = None) -> None:
        self._conn = sqlite3.connect(database_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._logger = logger or logging.getLogger(__name__)
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS balances (
                user_id INTEGER NOT NULL,
                currency TEXT NOT NULL,
                amount TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, currency)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS balance_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                currency TEXT NOT NULL,
                amount TEXT NOT NULL,
                reference TEXT UNIQUE,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    async def credit(
        self,
        user_id: int,
        currency: str,
        amount: Decimal,
        *,
        reference: Optional[str] = None,
    ) -> Decimal:
        """Add ``amount`` to the user's balance and return the new balance."""

        if amount <= 0:
            raise InvalidAmountError(f"Credit amount must be positive, got {amount}")
        async with self._lock:
            balance, applied = await asyncio.to_thread(
                self._credit_rows, user_id, currency, amount, reference
            )
        if applied:
            self._logger.info(
                "Credited %s %s to user %s (balance %s)", amount, currency, user_id, balance
            )
        else:
            self._logger.info(
                "Credit %s for user %s already applied, balance unchanged", reference, user_id
            )
        return balance

    async def get_balance(self, user_id: int, currency: str) -> Decimal:
        async with self._lock:
            row = await asyncio.to_thread(self._get_balance_row, user_id, currency)
        return Decimal(row["amount"]) if row is not None else Decimal("0")

    async def has_entry(self, reference: str) -> bool:
        """Return whether a credit with ``reference`` has been applied."""

        async with self._lock:
            row = await asyncio.to_thread(
                lambda: self._conn.execute(
                    "SELECT 1 FROM balance_entries WHERE reference = ?", (reference,)
                ).fetchone()
            )
        return row is not None

    async def cleanup(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._conn.close)

    # Internal helpers -------------------------------------------------

    def _get_balance_row(self, user_id: int, currency: str) -> Optional[sqlite3.Row]:
        return self._conn.execute(
            "SELECT amount FROM balances WHERE user_id = ? AND currency = ?",
            (user_id, currency),
        ).fetchone()

    def _credit_rows(
        self, user_id: int, currency: str, amount: Decimal, reference: Optional[str]
    ) -> tuple[Decimal, bool]:
        now = datetime.now(timezone.utc).isoformat()
        with self._conn:
            cursor = self._conn.execute(
                """
                INSERT INTO balance_entries (user_id, currency, amount, reference, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (reference) DO NOTHING
                """,
                (user_id, currency, str(amount), reference, now),
            )
            applied = cursor.rowcount > 0
            row = self._get_balance_row(user_id, currency)
            current = Decimal(row["amount"]) if row is not None else Decimal("0")
            if applied:
                current += amount
                # Amounts are stored as text to keep Decimal precision.
                self._conn.execute(
                    """
                    INSERT INTO balances (user_id, currency, amount, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (user_id, currency) DO UPDATE SET
                        amount = excluded.amount,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, currency, str(current), now),
                )
        return current, applied


__all__ = ["BalanceLedger"]
