"""
HTTP and OpenAI client factory utilities.
Centralizes client creation with consistent timeout configuration.
"""

from __future__ import annotations

from typing import Any

import httpx

from openai import AsyncAzureOpenAI, AsyncOpenAI

from tokenchat.utils.logger import logger

# Streaming completions can pause for a long time before the first byte,
# so reads get a generous budget while connect/write/pool stay short
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_READ_TIMEOUT = 600.0
DEFAULT_WRITE_TIMEOUT = 30.0
DEFAULT_POOL_TIMEOUT = 30.0

SENSITIVE_HEADERS = ("authorization", "api-key", "x-api-key")


def _sanitize_headers(headers: httpx.Headers) -> dict[str, str]:
    """Keep only the last 4 characters of credential headers."""
    sanitized = {}
    for key, value in headers.items():
        if key.lower() in SENSITIVE_HEADERS:
            value = f"***{value[-4:]}" if len(value) > 4 else "***"
        sanitized[key] = value
    return sanitized


async def _log_request(request: httpx.Request) -> None:
    logger.debug(
        f"HTTP Request: {request.method} {request.url}",
        http_request=True,
        headers=_sanitize_headers(request.headers),
    )


async def _log_response(response: httpx.Response) -> None:
    # Bodies are never logged: request bodies carry user messages
    logger.debug(
        f"HTTP Response: {response.status_code} {response.request.method} {response.request.url}",
        http_response=True,
        status=response.status_code,
    )


def create_http_client(
    enable_logging: bool = False,
    read_timeout: float | None = None,
) -> httpx.AsyncClient:
    """Create an HTTP client with timeouts suited to long-lived streaming responses.

    Args:
        enable_logging: Attach request/response metadata logging hooks
        read_timeout: Read timeout in seconds (default: 600s)
    """
    timeout = httpx.Timeout(
        connect=DEFAULT_CONNECT_TIMEOUT,
        read=read_timeout if read_timeout is not None else DEFAULT_READ_TIMEOUT,
        write=DEFAULT_WRITE_TIMEOUT,
        pool=DEFAULT_POOL_TIMEOUT,
    )

    if enable_logging:
        return httpx.AsyncClient(
            timeout=timeout,
            event_hooks={"request": [_log_request], "response": [_log_response]},
        )

    return httpx.AsyncClient(timeout=timeout)


def create_openai_client(
    api_key: str,
    base_url: str | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AsyncOpenAI:
    """Create an AsyncOpenAI client, optionally pointed at an OpenAI-compatible base URL."""
    kwargs: dict[str, Any] = {"api_key": api_key, "http_client": http_client}
    if base_url:
        kwargs["base_url"] = base_url
    return AsyncOpenAI(**kwargs)


def create_azure_openai_client(
    endpoint: str,
    api_key: str,
    api_version: str,
    http_client: httpx.AsyncClient | None = None,
) -> AsyncAzureOpenAI:
    """Create an AsyncAzureOpenAI client for a resource endpoint."""
    return AsyncAzureOpenAI(
        azure_endpoint=endpoint,
        api_key=api_key,
        api_version=api_version,
        http_client=http_client,
    )
