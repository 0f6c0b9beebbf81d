"""
OpenRouter completion backend.

Speaks the raw OpenAI-compatible SSE protocol over a plain httpx streaming
response: ``data: {json}`` lines carrying ``choices[0].delta.content`` and a
``data: [DONE]`` terminator.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx

from tokenchat.api.middleware.exception_handlers import CompletionError
from tokenchat.api.websocket.task_manager import CancellationToken
from tokenchat.core.constants import PROVIDER_OPENROUTER, Settings
from tokenchat.integrations.completion.base import ChatMessages, CompletionStream
from tokenchat.models.error_models import ErrorCode
from tokenchat.utils.client_factory import create_http_client
from tokenchat.utils.logger import logger
from tokenchat.utils.sse import SSEEventKind, SSELineBuffer, parse_sse_line


class OpenRouterBackend:
    """Streams chat completions from OpenRouter's ``/chat/completions`` endpoint."""

    provider = PROVIDER_OPENROUTER

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self._settings = settings
        self._client = http_client
        self._owns_client = http_client is None

    def _require_api_key(self) -> str:
        if not self._settings.openrouter_api_key:
            raise CompletionError(
                code=ErrorCode.LLM_CONFIG_ERROR,
                message="OPENROUTER_API_KEY is required when LLM_PROVIDER=openrouter",
            )
        return self._settings.openrouter_api_key

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = create_http_client(read_timeout=self._settings.http_read_timeout)
        return self._client

    @property
    def endpoint(self) -> str:
        return f"{self._settings.openrouter_base_url.rstrip('/')}/chat/completions"

    async def start_completion(
        self,
        messages: ChatMessages,
        cancel_token: CancellationToken,
    ) -> CompletionStream:
        api_key = self._require_api_key()
        client = self._get_client()

        request = client.build_request(
            "POST",
            self.endpoint,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": self._settings.openrouter_model,
                "messages": list(messages),
                "stream": True,
            },
        )

        try:
            response = await cancel_token.race(client.send(request, stream=True))
        except httpx.RequestError as e:
            raise CompletionError(
                code=ErrorCode.OPENROUTER_ERROR,
                message=f"Failed to connect to OpenRouter: {e}",
                cause=e,
            ) from e

        if not response.is_success:
            body = await response.aread()
            await response.aclose()
            text = body.decode("utf-8", errors="replace")
            logger.error(
                f"OpenRouter returned HTTP {response.status_code}",
                status=response.status_code,
                model=self._settings.openrouter_model,
            )
            raise CompletionError(
                code=ErrorCode.OPENROUTER_ERROR,
                message=f"OpenRouter API error ({response.status_code}): {text}",
                details={"status": response.status_code},
            )

        logger.debug("OpenRouter stream opened", model=self._settings.openrouter_model)
        return CompletionStream(
            self._iter_content(response),
            provider=self.provider,
            cancel_token=cancel_token,
            on_close=response.aclose,
        )

    async def _iter_content(self, response: httpx.Response) -> AsyncIterator[str]:
        buffer = SSELineBuffer()
        received = False

        async for data in response.aiter_bytes():
            if not data:
                continue
            received = True
            for line in buffer.feed(data):
                event = parse_sse_line(line)
                if event.kind is SSEEventKind.DONE:
                    return
                if event.kind is SSEEventKind.CONTENT:
                    yield event.content

        if not received:
            raise CompletionError(
                code=ErrorCode.OPENROUTER_ERROR,
                message="OpenRouter returned empty response body",
            )

        for line in buffer.flush():
            event = parse_sse_line(line)
            if event.kind is SSEEventKind.CONTENT:
                yield event.content

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["OpenRouterBackend"]
