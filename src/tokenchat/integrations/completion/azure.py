"""
Azure OpenAI completion backend.

Uses the ``openai`` SDK's streaming interface; each SDK chunk carries the same
delta-content field as the raw SSE protocol.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import httpx

from openai import APIConnectionError, APIError, APIStatusError, AsyncAzureOpenAI

from tokenchat.api.middleware.exception_handlers import CompletionError
from tokenchat.api.websocket.task_manager import CancellationToken
from tokenchat.core.constants import PROVIDER_AZURE, Settings
from tokenchat.integrations.completion.base import ChatMessages, CompletionStream
from tokenchat.models.error_models import ErrorCode
from tokenchat.utils.client_factory import create_azure_openai_client
from tokenchat.utils.logger import logger

# (settings attribute, environment variable) pairs checked on first use
_REQUIRED_SETTINGS = (
    ("azure_openai_endpoint", "AZURE_OPENAI_ENDPOINT"),
    ("azure_openai_api_key", "AZURE_OPENAI_API_KEY"),
    ("azure_openai_deployment", "AZURE_OPENAI_DEPLOYMENT"),
)


class AzureOpenAIBackend:
    """Streams chat completions from an Azure OpenAI deployment."""

    provider = PROVIDER_AZURE

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self._settings = settings
        self._http_client = http_client
        self._client: AsyncAzureOpenAI | None = None

    def _validate(self) -> None:
        for attr, env_name in _REQUIRED_SETTINGS:
            if not getattr(self._settings, attr):
                raise CompletionError(
                    code=ErrorCode.LLM_CONFIG_ERROR,
                    message=f"{env_name} is required when LLM_PROVIDER=azure",
                )

    def _get_client(self) -> AsyncAzureOpenAI:
        if self._client is None:
            self._client = create_azure_openai_client(
                endpoint=str(self._settings.azure_openai_endpoint),
                api_key=str(self._settings.azure_openai_api_key),
                api_version=self._settings.azure_openai_api_version,
                http_client=self._http_client,
            )
        return self._client

    async def start_completion(
        self,
        messages: ChatMessages,
        cancel_token: CancellationToken,
    ) -> CompletionStream:
        self._validate()
        client = self._get_client()

        try:
            sdk_stream = await cancel_token.race(
                client.chat.completions.create(
                    model=str(self._settings.azure_openai_deployment),
                    messages=list(messages),  # type: ignore[arg-type]
                    stream=True,
                )
            )
        except APIConnectionError as e:
            raise CompletionError(
                code=ErrorCode.AZURE_OPENAI_ERROR,
                message=f"Failed to connect to Azure OpenAI: {e}",
                cause=e,
            ) from e
        except APIStatusError as e:
            logger.error(
                f"Azure OpenAI returned HTTP {e.status_code}",
                status=e.status_code,
                deployment=self._settings.azure_openai_deployment,
            )
            raise CompletionError(
                code=ErrorCode.AZURE_OPENAI_ERROR,
                message=f"Azure OpenAI API error ({e.status_code}): {e.message}",
                details={"status": e.status_code},
                cause=e,
            ) from e
        except APIError as e:
            raise CompletionError(
                code=ErrorCode.AZURE_OPENAI_ERROR,
                message=f"Azure OpenAI API error: {e.message}",
                cause=e,
            ) from e

        logger.debug("Azure OpenAI stream opened", deployment=self._settings.azure_openai_deployment)
        return CompletionStream(
            self._iter_content(sdk_stream),
            provider=self.provider,
            cancel_token=cancel_token,
            on_close=sdk_stream.close,
        )

    async def _iter_content(self, sdk_stream: Any) -> AsyncIterator[str]:
        async for chunk in sdk_stream:
            # Azure sends content-filter chunks with an empty choices list
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            content = getattr(delta, "content", None) if delta is not None else None
            if content:
                yield content

    async def aclose(self) -> None:
        # An injected http client belongs to the caller
        if self._client is not None and self._http_client is None:
            await self._client.close()
        self._client = None


__all__ = ["AzureOpenAIBackend"]
