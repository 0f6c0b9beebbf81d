"""
Token ledger records and billing API payloads.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import Field

from tokenchat.core.constants import (
    TRANSACTION_CHAT_MESSAGE,
    TRANSACTION_PURCHASE,
    TRANSACTION_REFUND,
    TRANSACTION_SIGNUP_BONUS,
    TokenPack,
)
from tokenchat.models.chat_models import WireModel


class TransactionType(str, Enum):
    SIGNUP_BONUS = TRANSACTION_SIGNUP_BONUS
    CHAT_MESSAGE = TRANSACTION_CHAT_MESSAGE
    REFUND = TRANSACTION_REFUND
    PURCHASE = TRANSACTION_PURCHASE


class TokenTransaction(WireModel):
    """One immutable row of the audit log.

    ``balance_after`` is the ledger balance immediately after the mutation
    this row describes, so summing ``amount`` over rows in creation order
    reproduces every intermediate balance.
    """

    id: UUID
    user_id: str
    amount: int
    type: TransactionType
    reference_id: str | None = None
    description: str
    balance_after: int = Field(..., ge=0)
    created_at: datetime


class BalanceResponse(WireModel):
    balance: int
    low_balance: bool


class TransactionHistoryResponse(WireModel):
    transactions: list[TokenTransaction]
    total: int
    page: int
    page_size: int


class TokenPackResponse(WireModel):
    id: str
    name: str
    tokens: int
    price_in_cents: int
    description: str

    @classmethod
    def from_pack(cls, pack: TokenPack) -> TokenPackResponse:
        return cls(
            id=pack.id,
            name=pack.name,
            tokens=pack.tokens,
            price_in_cents=pack.price_in_cents,
            description=pack.description,
        )


class SignupGrantResponse(WireModel):
    balance: int
    granted: int


__all__ = [
    "BalanceResponse",
    "SignupGrantResponse",
    "TokenPackResponse",
    "TokenTransaction",
    "TransactionHistoryResponse",
    "TransactionType",
]
