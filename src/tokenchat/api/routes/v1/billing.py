"""
Token balance, history and pack catalogue endpoints.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Query, status

from tokenchat.api.dependencies import Billing
from tokenchat.api.middleware.auth import CurrentUser
from tokenchat.core.constants import FREE_SIGNUP_TOKENS, LOW_BALANCE_THRESHOLD, TOKEN_PACKS
from tokenchat.models.billing_models import (
    BalanceResponse,
    SignupGrantResponse,
    TokenPackResponse,
    TransactionHistoryResponse,
)

router = APIRouter(prefix="/billing", tags=["Billing"])


@router.get("/balance", response_model=BalanceResponse, summary="Current token balance")
async def get_balance(user: CurrentUser, billing: Billing) -> BalanceResponse:
    balance = await billing.get_token_balance(user.id)
    return BalanceResponse(balance=balance, low_balance=balance <= LOW_BALANCE_THRESHOLD)


@router.get(
    "/transactions",
    response_model=TransactionHistoryResponse,
    summary="Token transaction history",
    description="Newest first, paginated with 1-based pages.",
)
async def list_transactions(
    user: CurrentUser,
    billing: Billing,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(alias="pageSize", ge=1, le=100)] = 20,
) -> TransactionHistoryResponse:
    result = await billing.get_transaction_history(user.id, page=page, page_size=page_size)
    return TransactionHistoryResponse(
        transactions=result.transactions,
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )


@router.get("/packs", response_model=list[TokenPackResponse], summary="Purchasable token packs")
async def list_packs() -> list[TokenPackResponse]:
    return [TokenPackResponse.from_pack(pack) for pack in TOKEN_PACKS]


@router.post(
    "/signup-grant",
    response_model=SignupGrantResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Grant the free signup bonus",
    description="Grants the signup tokens once; 409 if the user already has a balance.",
)
async def signup_grant(user: CurrentUser, billing: Billing) -> SignupGrantResponse:
    balance = await billing.grant_signup_tokens(user.id)
    return SignupGrantResponse(balance=balance, granted=FREE_SIGNUP_TOKENS)
