from __future__ import annotations

import asyncio

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import asyncpg

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app
from starlette.datastructures import State

from tokenchat.api.middleware.exception_handlers import register_exception_handlers
from tokenchat.api.middleware.request_context import RequestContextMiddleware
from tokenchat.api.routes import chat
from tokenchat.api.routes.v1 import router as v1_router
from tokenchat.api.services.billing_service import BillingService
from tokenchat.api.services.chat_service import ChatService
from tokenchat.api.services.conversation_service import ConversationService
from tokenchat.api.services.ledger_service import TokenLedger
from tokenchat.api.services.rag_service import RetrievalService
from tokenchat.api.services.webhook_service import ProcessedEventStore
from tokenchat.api.websocket.manager import WebSocketManager
from tokenchat.api.websocket.task_manager import ActiveStreamRegistry
from tokenchat.core.constants import get_settings
from tokenchat.integrations.completion import create_completion_backend
from tokenchat.integrations.embedding_service import EmbeddingService
from tokenchat.utils.client_factory import create_http_client
from tokenchat.utils.db_utils import check_pool_health, create_database_pool, graceful_pool_close
from tokenchat.utils.logger import configure_uvicorn_logging, logger

settings = get_settings()

if settings.debug:
    from tokenchat.core.constants import _get_env_files

    logger.info(
        f"tokenchat {settings.app_version} ({settings.app_env}) llm_provider={settings.llm_provider} "
        f"env_files={[f.name for f in _get_env_files()]}"
    )

configure_uvicorn_logging()


async def _open_database() -> asyncpg.Pool:
    pool = await create_database_pool(settings)
    health = await check_pool_health(pool)
    if not health["healthy"]:
        await pool.close()
        raise RuntimeError("Database unreachable at startup")
    logger.info(f"Database ready: {health['pool_size']} connections, {health['free_connections']} idle")
    return pool


def _wire_services(state: State) -> None:
    """Build the turn pipeline on ``state``; every collaborator is shared process-wide."""
    # Backends validate their credentials on first use, not here
    state.http_client = create_http_client(enable_logging=settings.debug, read_timeout=settings.http_read_timeout)
    state.completion_backend = create_completion_backend(settings, http_client=state.http_client)
    state.embedding_service = EmbeddingService(settings)
    state.active_streams = ActiveStreamRegistry()
    state.processed_events = ProcessedEventStore()
    state.chat_service = ChatService(
        billing=BillingService(TokenLedger(state.db_pool)),
        conversations=ConversationService(state.db_pool),
        retriever=RetrievalService(state.db_pool, state.embedding_service, settings),
        completion_backend=state.completion_backend,
        active_streams=state.active_streams,
        settings=settings,
    )
    state.ws_manager = WebSocketManager(
        idle_timeout_seconds=settings.ws_idle_timeout,
        max_connections=settings.ws_max_connections,
        max_connections_per_user=settings.ws_max_connections_per_user,
    )


async def _drain(state: State) -> None:
    """Release resources in reverse dependency order, streaming turns first."""
    state.shutdown_event.set()
    if cancelled := await state.active_streams.cancel_all(reason="shutdown"):
        logger.info(f"Shutdown cancelled {cancelled} streaming turns")
    await state.ws_manager.graceful_shutdown(timeout=settings.shutdown_connection_drain_timeout)

    await state.completion_backend.aclose()
    await state.embedding_service.aclose()
    await state.http_client.aclose()

    await graceful_pool_close(state.db_pool, timeout=settings.shutdown_timeout)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    app.state.shutdown_event = asyncio.Event()
    app.state.db_pool = await _open_database()
    _wire_services(app.state)
    await app.state.ws_manager.start_idle_checker()
    try:
        yield
    finally:
        logger.info("tokenchat shutting down")
        await _drain(app.state)


app = FastAPI(
    title="tokenchat API",
    description="""
## tokenchat API

Prepaid-token AI chat with streaming answers and retrieval-augmented context.

### Features
- **Real-time Chat**: WebSocket streaming at `/ws/chat`, with an HTTP + SSE fallback
- **Token Billing**: One token per turn, refunded when a turn fails
- **Conversations**: Owner-scoped conversation and message history
- **Payments**: Chargebee webhook credits purchased token packs

### Authentication
All endpoints except health checks and webhooks require a JWT Bearer token.
The WebSocket endpoint takes the token as the `token` query parameter.
""",
    version=settings.app_version,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Health", "description": "Health check endpoints for monitoring and orchestration"},
        {"name": "Chat", "description": "HTTP + SSE chat fallback"},
        {"name": "Conversations", "description": "Conversation CRUD and message history"},
        {"name": "Billing", "description": "Token balance, history and packs"},
        {"name": "Webhooks", "description": "Payment provider callbacks"},
        {"name": "WebSocket", "description": "Real-time chat streaming"},
    ],
    openapi_url="/api/v1/openapi.json",
    docs_url="/api/v1/docs",
    redoc_url="/api/v1/redoc",
)

register_exception_handlers(app)

# Added last runs first: CORS wraps the request scope
app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Conversation-Id", "X-Token-Balance", "X-Request-ID", "X-Response-Time"],
)

app.include_router(v1_router, prefix="/api/v1")
# The socket path is part of the client protocol and stays unversioned
app.include_router(chat.router, tags=["WebSocket"])
app.mount("/metrics", make_asgi_app())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tokenchat.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        reload_dirs=["src"],
        log_config=None,
    )
