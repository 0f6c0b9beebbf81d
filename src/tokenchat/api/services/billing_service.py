"""
Billing operations on top of the token ledger.

Turns ledger primitives into the business operations used by the chat turn
orchestrator, the billing API and the payment webhook. Failures are raised as
``LedgerError`` with the failure kind in ``code``.
"""

from __future__ import annotations

from dataclasses import dataclass

from tokenchat.api.middleware.exception_handlers import LedgerError
from tokenchat.api.services.ledger_service import LedgerStore
from tokenchat.core.constants import (
    DESCRIPTION_CHAT_MESSAGE,
    DESCRIPTION_PURCHASE,
    DESCRIPTION_REFUND,
    DESCRIPTION_SIGNUP_BONUS,
    FREE_SIGNUP_TOKENS,
    TOKENS_PER_TURN,
    find_token_pack,
)
from tokenchat.models.billing_models import TokenTransaction, TransactionType
from tokenchat.models.error_models import ErrorCode
from tokenchat.utils import metrics
from tokenchat.utils.logger import logger


@dataclass(frozen=True, slots=True)
class TransactionPage:
    transactions: list[TokenTransaction]
    total: int
    page: int
    page_size: int


class BillingService:
    """Token balance business logic."""

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger

    async def grant_signup_tokens(self, user_id: str) -> int:
        """Give a new user the free signup bonus.

        Raises:
            LedgerError: SIGNUP_ALREADY_GRANTED if the user already has a balance
        """
        balance = await self.ledger.grant_initial(
            user_id,
            FREE_SIGNUP_TOKENS,
            TransactionType.SIGNUP_BONUS,
            DESCRIPTION_SIGNUP_BONUS,
        )
        if balance is None:
            raise LedgerError(
                code=ErrorCode.SIGNUP_ALREADY_GRANTED,
                message="Signup tokens have already been granted",
                details={"user_id": user_id},
            )
        metrics.tokens_credited_total.labels(type=TransactionType.SIGNUP_BONUS.value).inc(FREE_SIGNUP_TOKENS)
        return balance

    async def get_token_balance(self, user_id: str) -> int:
        """Current balance; a user with no balance row starts at 0."""
        balance = await self.ledger.get_balance(user_id)
        if balance is not None:
            return balance

        await self.ledger.initialize_balance(user_id, 0)
        # Another request may have created the row first
        balance = await self.ledger.get_balance(user_id)
        return balance or 0

    async def consume_token(self, user_id: str, reference_id: str | None) -> int:
        """Debit one chat turn.

        Raises:
            LedgerError: INSUFFICIENT_TOKENS when the balance is empty
        """
        balance = await self.ledger.apply_debit(
            user_id,
            TOKENS_PER_TURN,
            TransactionType.CHAT_MESSAGE,
            DESCRIPTION_CHAT_MESSAGE,
            reference_id=reference_id,
        )
        if balance is None:
            metrics.insufficient_tokens_total.inc()
            raise LedgerError(
                code=ErrorCode.INSUFFICIENT_TOKENS,
                message="Insufficient tokens. Please purchase more tokens to continue.",
            )
        metrics.tokens_debited_total.inc(TOKENS_PER_TURN)
        return balance

    async def refund_token(self, user_id: str, reference_id: str | None) -> int:
        """Return the token of a failed turn."""
        balance = await self.ledger.apply_credit(
            user_id,
            TOKENS_PER_TURN,
            TransactionType.REFUND,
            DESCRIPTION_REFUND,
            reference_id=reference_id,
        )
        metrics.tokens_refunded_total.inc(TOKENS_PER_TURN)
        return balance

    async def credit_purchased_tokens(self, user_id: str, pack_id: str, invoice_id: str) -> int:
        """Credit a purchased pack.

        Raises:
            LedgerError: INVALID_PACK for an unknown pack id
        """
        pack = find_token_pack(pack_id)
        if pack is None:
            raise LedgerError(
                code=ErrorCode.INVALID_PACK,
                message=f"Invalid token pack: {pack_id}",
                details={"pack_id": pack_id},
            )

        balance = await self.ledger.apply_credit(
            user_id,
            pack.tokens,
            TransactionType.PURCHASE,
            DESCRIPTION_PURCHASE.format(pack_name=pack.name),
            reference_id=invoice_id,
        )
        metrics.tokens_credited_total.labels(type=TransactionType.PURCHASE.value).inc(pack.tokens)
        logger.info(
            f"Credited {pack.tokens} tokens for {pack.id}",
            user_id=user_id,
            invoice_id=invoice_id,
            balance=balance,
        )
        return balance

    async def get_transaction_history(self, user_id: str, page: int = 1, page_size: int = 20) -> TransactionPage:
        """Newest-first page of the user's audit log. Pages are 1-based."""
        page = max(page, 1)
        offset = (page - 1) * page_size
        transactions, total = await self.ledger.list_transactions(user_id, page_size, offset)
        return TransactionPage(transactions=transactions, total=total, page=page, page_size=page_size)


__all__ = ["BillingService", "TransactionPage"]
