from __future__ import annotations

from typing import Annotated

import asyncpg

from fastapi import Depends, Request

from tokenchat.api.services.billing_service import BillingService
from tokenchat.api.services.chat_service import ChatService
from tokenchat.api.services.conversation_service import ConversationService
from tokenchat.api.services.ledger_service import TokenLedger
from tokenchat.api.services.webhook_service import ChargebeeWebhookService
from tokenchat.core.constants import Settings, get_settings


async def get_db(request: Request) -> asyncpg.Pool:
    """Get database connection pool from application state."""
    return request.app.state.db_pool


def get_app_settings() -> Settings:
    return get_settings()


def get_billing_service(db: Annotated[asyncpg.Pool, Depends(get_db)]) -> BillingService:
    """Provide billing operations over the PostgreSQL token ledger."""
    return BillingService(TokenLedger(db))


def get_conversation_service(db: Annotated[asyncpg.Pool, Depends(get_db)]) -> ConversationService:
    return ConversationService(db)


def get_chat_service(request: Request) -> ChatService:
    """Turn orchestrator built once in the application lifespan."""
    return request.app.state.chat_service


def get_webhook_service(
    request: Request,
    billing: Annotated[BillingService, Depends(get_billing_service)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> ChargebeeWebhookService:
    return ChargebeeWebhookService(billing, request.app.state.processed_events, settings)


# Type aliases for cleaner route signatures
DB = Annotated[asyncpg.Pool, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
Billing = Annotated[BillingService, Depends(get_billing_service)]
Conversations = Annotated[ConversationService, Depends(get_conversation_service)]
Chat = Annotated[ChatService, Depends(get_chat_service)]
Webhooks = Annotated[ChargebeeWebhookService, Depends(get_webhook_service)]
