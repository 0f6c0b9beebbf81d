"""
Completion backend selection.

The backend is chosen once from ``LLM_PROVIDER``; the orchestrator only ever
sees the ``CompletionBackend`` interface.
"""

from __future__ import annotations

import httpx

from tokenchat.api.middleware.exception_handlers import CompletionError
from tokenchat.api.websocket.task_manager import CancellationToken
from tokenchat.core.constants import PROVIDER_AZURE, PROVIDER_OPENROUTER, Settings
from tokenchat.integrations.completion.azure import AzureOpenAIBackend
from tokenchat.integrations.completion.base import ChatMessages, CompletionBackend, CompletionStream
from tokenchat.integrations.completion.openrouter import OpenRouterBackend
from tokenchat.models.error_models import ErrorCode
from tokenchat.utils.logger import logger


class MisconfiguredBackend:
    """Stands in for an unrecognized provider so the failure surfaces on first use, not at boot."""

    def __init__(self, provider: str):
        self.provider = provider

    async def start_completion(
        self,
        messages: ChatMessages,
        cancel_token: CancellationToken,
    ) -> CompletionStream:
        raise CompletionError(
            code=ErrorCode.LLM_CONFIG_ERROR,
            message=f'Invalid LLM_PROVIDER "{self.provider}". Must be "openrouter" or "azure".',
        )

    async def aclose(self) -> None:
        return None


def create_completion_backend(
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
) -> CompletionBackend:
    """Build the backend named by ``settings.llm_provider``.

    Credentials are not checked here; each backend validates them lazily
    and raises ``LLM_CONFIG_ERROR`` on its first request.
    """
    provider = settings.llm_provider
    backend: CompletionBackend
    if provider == PROVIDER_OPENROUTER:
        backend = OpenRouterBackend(settings, http_client=http_client)
    elif provider == PROVIDER_AZURE:
        backend = AzureOpenAIBackend(settings)
    else:
        logger.warning(f"Unrecognized LLM_PROVIDER {provider!r}; chat turns will fail until it is fixed")
        backend = MisconfiguredBackend(provider)

    logger.info(f"Completion backend: {backend.provider}")
    return backend


__all__ = ["MisconfiguredBackend", "create_completion_backend"]
