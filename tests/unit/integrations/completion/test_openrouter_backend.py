"""Tests for the OpenRouter SSE backend using httpx's mock transport."""

from __future__ import annotations

import asyncio
import json

from collections.abc import Callable
from typing import Any

import httpx
import pytest

from tokenchat.api.middleware.exception_handlers import CompletionError
from tokenchat.api.websocket.task_manager import CancellationToken, OperationCancelled
from tokenchat.core.constants import Settings
from tokenchat.integrations.completion.openrouter import OpenRouterBackend
from tokenchat.models.error_models import ErrorCode

MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]


def _sse(*contents: str, done: bool = True) -> bytes:
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': c}}]})}\n\n" for c in contents]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def _backend(settings: Settings, handler: Callable[[httpx.Request], Any]) -> OpenRouterBackend:
    return OpenRouterBackend(settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


async def _collect(backend: OpenRouterBackend) -> tuple[list[str], str]:
    stream = await backend.start_completion(MESSAGES, CancellationToken())
    chunks = [chunk.content async for chunk in stream]
    return chunks, await stream.full_text


class TestOpenRouterBackend:
    @pytest.mark.asyncio
    async def test_streams_content(self, settings: Settings) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            body = b": OPENROUTER PROCESSING\n\n" + _sse("4", "!")
            return httpx.Response(200, content=body)

        chunks, text = await _collect(_backend(settings, handler))

        assert chunks == ["4", "!"]
        assert text == "4!"
        request = seen[0]
        assert str(request.url) == "https://openrouter.ai/api/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer test-openrouter-key"
        payload = json.loads(request.content)
        assert payload["stream"] is True
        assert payload["messages"] == MESSAGES
        assert payload["model"] == settings.openrouter_model

    @pytest.mark.asyncio
    async def test_stops_at_done(self, settings: Settings) -> None:
        body = _sse("a") + _sse("ignored", done=False)

        chunks, _ = await _collect(_backend(settings, lambda request: httpx.Response(200, content=body)))

        assert chunks == ["a"]

    @pytest.mark.asyncio
    async def test_trailing_line_without_newline(self, settings: Settings) -> None:
        body = _sse("a", done=False) + b'data: {"choices": [{"delta": {"content": "b"}}]}'

        chunks, _ = await _collect(_backend(settings, lambda request: httpx.Response(200, content=body)))

        assert chunks == ["a", "b"]

    @pytest.mark.asyncio
    async def test_http_error(self, settings: Settings) -> None:
        backend = _backend(settings, lambda request: httpx.Response(500, text="upstream exploded"))

        with pytest.raises(CompletionError) as exc_info:
            await backend.start_completion(MESSAGES, CancellationToken())

        assert exc_info.value.code is ErrorCode.OPENROUTER_ERROR
        assert exc_info.value.message == "OpenRouter API error (500): upstream exploded"

    @pytest.mark.asyncio
    async def test_connection_error(self, settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CompletionError) as exc_info:
            await _backend(settings, handler).start_completion(MESSAGES, CancellationToken())

        assert exc_info.value.message.startswith("Failed to connect to OpenRouter:")

    @pytest.mark.asyncio
    async def test_empty_body(self, settings: Settings) -> None:
        backend = _backend(settings, lambda request: httpx.Response(200, content=b""))

        with pytest.raises(CompletionError) as exc_info:
            await _collect(backend)

        assert exc_info.value.message == "OpenRouter returned empty response body"

    @pytest.mark.asyncio
    async def test_missing_api_key(self, settings: Settings) -> None:
        backend = _backend(
            settings.model_copy(update={"openrouter_api_key": None}),
            lambda request: httpx.Response(200),
        )

        with pytest.raises(CompletionError) as exc_info:
            await backend.start_completion(MESSAGES, CancellationToken())

        assert exc_info.value.code is ErrorCode.LLM_CONFIG_ERROR
        assert exc_info.value.message == "OPENROUTER_API_KEY is required when LLM_PROVIDER=openrouter"

    @pytest.mark.asyncio
    async def test_abort_while_connecting(self, settings: Settings) -> None:
        """Test that a cancel before the response headers arrive aborts the request."""
        connecting = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            connecting.set()
            await asyncio.sleep(10)
            return httpx.Response(200)

        token = CancellationToken()
        starting = asyncio.create_task(_backend(settings, handler).start_completion(MESSAGES, token))
        await asyncio.wait_for(connecting.wait(), 1)
        await token.cancel("client abort")

        with pytest.raises(OperationCancelled):
            await asyncio.wait_for(starting, 1)
