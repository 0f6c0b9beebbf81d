"""
Token ledger backed by PostgreSQL.

``token_balances`` holds one row per user; ``token_transactions`` is the
append-only audit log. Every balance mutation runs as a single conditional
statement, and the compound ``apply_*`` helpers write the mutation and its
audit row in one transaction, so ``balance_after`` is always the exact
post-mutation balance.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import asyncpg

from tokenchat.models.billing_models import TokenTransaction, TransactionType
from tokenchat.utils.db_utils import transaction, use_connection, with_retry
from tokenchat.utils.logger import logger


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """Audit row to append after a balance mutation."""

    user_id: str
    amount: int
    type: TransactionType
    description: str
    balance_after: int
    reference_id: str | None = None


class LedgerStore(Protocol):
    """Operations the billing service needs from a ledger."""

    async def get_balance(self, user_id: str) -> int | None: ...

    async def initialize_balance(self, user_id: str, amount: int = 0) -> bool: ...

    async def grant_initial(
        self, user_id: str, amount: int, type: TransactionType, description: str
    ) -> int | None: ...

    async def apply_debit(
        self,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        reference_id: str | None = None,
    ) -> int | None: ...

    async def apply_credit(
        self,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        reference_id: str | None = None,
    ) -> int: ...

    async def list_transactions(
        self, user_id: str, limit: int, offset: int
    ) -> tuple[list[TokenTransaction], int]: ...


def _row_to_transaction(row: asyncpg.Record | dict[str, Any]) -> TokenTransaction:
    return TokenTransaction(
        id=row["id"],
        user_id=row["user_id"],
        amount=row["amount"],
        type=TransactionType(row["type"]),
        reference_id=row["reference_id"],
        description=row["description"],
        balance_after=row["balance_after"],
        created_at=row["created_at"],
    )


class TokenLedger:
    """Atomic balance store with an audit log.

    The single-statement methods accept an optional ``conn`` so they can join
    an enclosing transaction.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @with_retry()
    async def get_balance(self, user_id: str, conn: asyncpg.Connection | None = None) -> int | None:
        """Current balance, or None if the user has no balance row yet."""
        async with use_connection(self.pool, conn) as c:
            balance = await c.fetchval(
                "SELECT balance FROM token_balances WHERE user_id = $1",
                user_id,
            )
        return int(balance) if balance is not None else None

    async def initialize_balance(
        self, user_id: str, amount: int = 0, conn: asyncpg.Connection | None = None
    ) -> bool:
        """Create the balance row. Returns False if one already existed (left untouched)."""
        async with use_connection(self.pool, conn) as c:
            inserted = await c.fetchval(
                """
                INSERT INTO token_balances (user_id, balance)
                VALUES ($1, $2)
                ON CONFLICT (user_id) DO NOTHING
                RETURNING balance
                """,
                user_id,
                amount,
            )
        return inserted is not None

    async def debit(
        self, user_id: str, amount: int = 1, conn: asyncpg.Connection | None = None
    ) -> int | None:
        """Compare-and-decrement. Returns the new balance, or None when funds are insufficient."""
        async with use_connection(self.pool, conn) as c:
            balance = await c.fetchval(
                """
                UPDATE token_balances
                SET balance = balance - $2, updated_at = now()
                WHERE user_id = $1 AND balance >= $2
                RETURNING balance
                """,
                user_id,
                amount,
            )
        return int(balance) if balance is not None else None

    async def credit(self, user_id: str, amount: int, conn: asyncpg.Connection | None = None) -> int:
        """Additive credit; creates the balance row on first touch. Returns the new balance."""
        async with use_connection(self.pool, conn) as c:
            balance = await c.fetchval(
                """
                INSERT INTO token_balances (user_id, balance)
                VALUES ($1, $2)
                ON CONFLICT (user_id) DO UPDATE
                SET balance = token_balances.balance + EXCLUDED.balance, updated_at = now()
                RETURNING balance
                """,
                user_id,
                amount,
            )
        return int(balance)

    async def record_transaction(
        self, entry: LedgerEntry, conn: asyncpg.Connection | None = None
    ) -> TokenTransaction:
        """Append one audit row."""
        async with use_connection(self.pool, conn) as c:
            row = await c.fetchrow(
                """
                INSERT INTO token_transactions (
                    user_id, amount, type, reference_id, description, balance_after, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, clock_timestamp())
                RETURNING *
                """,
                entry.user_id,
                entry.amount,
                entry.type.value,
                entry.reference_id,
                entry.description,
                entry.balance_after,
            )
        return _row_to_transaction(row)

    async def grant_initial(
        self, user_id: str, amount: int, type: TransactionType, description: str
    ) -> int | None:
        """Create the balance row at ``amount`` and log it. None if the row already existed."""
        async with transaction(self.pool) as conn:
            if not await self.initialize_balance(user_id, amount, conn=conn):
                return None
            await self.record_transaction(
                LedgerEntry(
                    user_id=user_id,
                    amount=amount,
                    type=type,
                    description=description,
                    balance_after=amount,
                ),
                conn=conn,
            )
        logger.info(f"Initial balance granted: {amount}", user_id=user_id, transaction_type=type.value)
        return amount

    async def apply_debit(
        self,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        reference_id: str | None = None,
    ) -> int | None:
        """Debit and log atomically. Returns the new balance or None on insufficient funds."""
        async with transaction(self.pool) as conn:
            balance = await self.debit(user_id, amount, conn=conn)
            if balance is None:
                return None
            await self.record_transaction(
                LedgerEntry(
                    user_id=user_id,
                    amount=-amount,
                    type=type,
                    description=description,
                    balance_after=balance,
                    reference_id=reference_id,
                ),
                conn=conn,
            )
        return balance

    async def apply_credit(
        self,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        reference_id: str | None = None,
    ) -> int:
        """Credit and log atomically. Returns the new balance."""
        async with transaction(self.pool) as conn:
            balance = await self.credit(user_id, amount, conn=conn)
            await self.record_transaction(
                LedgerEntry(
                    user_id=user_id,
                    amount=amount,
                    type=type,
                    description=description,
                    balance_after=balance,
                    reference_id=reference_id,
                ),
                conn=conn,
            )
        return balance

    @with_retry()
    async def list_transactions(
        self, user_id: str, limit: int, offset: int
    ) -> tuple[list[TokenTransaction], int]:
        """One page of the audit log, newest first, plus the total row count."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM token_transactions
                WHERE user_id = $1
                ORDER BY created_at DESC, seq DESC
                LIMIT $2 OFFSET $3
                """,
                user_id,
                limit,
                offset,
            )
            total = await conn.fetchval(
                "SELECT COUNT(*) FROM token_transactions WHERE user_id = $1",
                user_id,
            )
        return [_row_to_transaction(r) for r in rows], int(total or 0)


__all__ = ["LedgerEntry", "LedgerStore", "TokenLedger"]
