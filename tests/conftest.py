"""Shared test fixtures for the tokenchat test suite.

This module provides settings isolation, a mocked asyncpg pool and in-memory
fakes for the ledger, conversation, retrieval and completion collaborators of
the chat turn orchestrator.
"""

from __future__ import annotations

from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import EventRecorder, FakeCompletionBackend, FakeConversationStore, FakeLedger, FakeRetriever

from tokenchat.core.constants import Settings, clear_settings_cache
from tokenchat.models.api_models import UserInfo

# ============================================================================
# Test Isolation: Settings Management
# ============================================================================


@pytest.fixture(autouse=True)
def reset_settings_singleton(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Start every test with a fresh settings singleton in the test environment."""
    monkeypatch.setenv("APP_ENV", "test")
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> Settings:
    """Settings with fast timeouts and retrieval enabled."""
    return Settings(
        app_env="test",
        jwt_secret="test-jwt-secret",
        openrouter_api_key="test-openrouter-key",
        completion_timeout_seconds=5.0,
        rag_enabled=True,
        chargebee_webhook_username="cb-user",
        chargebee_webhook_password="cb-pass",
    )


# ============================================================================
# Database Mocks
# ============================================================================


@pytest.fixture
def mock_db_conn() -> AsyncMock:
    """asyncpg connection mock; ``transaction()`` is a no-op async context manager."""
    conn = AsyncMock()
    tx = MagicMock()
    tx.__aenter__ = AsyncMock(return_value=None)
    tx.__aexit__ = AsyncMock(return_value=None)
    conn.transaction = MagicMock(return_value=tx)
    return conn


@pytest.fixture
def mock_db_pool(mock_db_conn: AsyncMock) -> MagicMock:
    """asyncpg pool mock whose ``acquire()`` yields ``mock_db_conn``."""
    pool = MagicMock()
    pool.get_size.return_value = 10
    pool.get_idle_size.return_value = 8
    pool.get_min_size.return_value = 2
    pool.get_max_size.return_value = 10

    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=mock_db_conn)
    cm.__aexit__ = AsyncMock(return_value=None)
    pool.acquire.return_value = cm
    return pool


# ============================================================================
# Collaborator Fixtures
# ============================================================================


@pytest.fixture
def user() -> UserInfo:
    return UserInfo(id="user-1", email="user@example.com")


@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def fake_conversations() -> FakeConversationStore:
    return FakeConversationStore()


@pytest.fixture
def fake_retriever() -> FakeRetriever:
    return FakeRetriever()


@pytest.fixture
def fake_backend() -> FakeCompletionBackend:
    return FakeCompletionBackend()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()
