"""
API v1 Router - Aggregates all v1 endpoints.

Usage in main.py:
    from tokenchat.api.routes.v1 import router as v1_router
    app.include_router(v1_router, prefix="/api/v1")
"""

from fastapi import APIRouter

from tokenchat.api.routes.v1 import billing, chat, conversations, health, webhooks

# Create the v1 API router
router = APIRouter()

# Health endpoints (no auth required)
router.include_router(health.router)

# Chat over HTTP + SSE
router.include_router(chat.router, tags=["Chat"])

# Conversation management
router.include_router(conversations.router)

# Token balance and packs
router.include_router(billing.router)

# Payment provider callbacks (Basic auth)
router.include_router(webhooks.router)

__all__ = ["router"]
