"""
Embedding service for retrieval queries.

Calls the OpenRouter embeddings endpoint through the ``openai`` SDK; the
query vector is compared against ``document_chunks`` by ``match_chunks``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from openai import APIConnectionError, APIStatusError

from tokenchat.api.middleware.exception_handlers import RetrievalError
from tokenchat.core.constants import Settings
from tokenchat.models.error_models import ErrorCode
from tokenchat.utils.client_factory import create_openai_client
from tokenchat.utils.logger import logger

if TYPE_CHECKING:
    from openai import AsyncOpenAI


class EmbeddingService:
    """Generate a query embedding with the configured RAG embedding model."""

    def __init__(self, settings: Settings, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        """Lazily initialize the OpenAI-compatible client."""
        if self._client is None:
            if not self._settings.openrouter_api_key:
                raise RetrievalError(
                    code=ErrorCode.EMBEDDING_FAILED,
                    message="OPENROUTER_API_KEY is required for embeddings",
                )
            self._client = create_openai_client(
                api_key=self._settings.openrouter_api_key,
                base_url=self._settings.openrouter_base_url,
            )
        return self._client

    async def embed_text(self, text: str) -> list[float]:
        """Embed one query string.

        Raises:
            RetrievalError: EMBEDDING_FAILED on connection, HTTP or empty-response failures
        """
        client = self._get_client()
        model = self._settings.rag_embedding_model

        try:
            response = await client.embeddings.create(model=model, input=text)
        except APIConnectionError as e:
            raise RetrievalError(
                code=ErrorCode.EMBEDDING_FAILED,
                message=f"Failed to connect to embedding API: {e}",
                cause=e,
            ) from e
        except APIStatusError as e:
            logger.error("Embedding request rejected", status=e.status_code, model=model, text_length=len(text))
            raise RetrievalError(
                code=ErrorCode.EMBEDDING_FAILED,
                message=f"Embedding API error ({e.status_code}): {e.message}",
                details={"status": e.status_code},
                cause=e,
            ) from e

        if not response.data or not response.data[0].embedding:
            raise RetrievalError(
                code=ErrorCode.EMBEDDING_FAILED,
                message="Embedding API returned empty data",
            )

        return list(response.data[0].embedding)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


__all__ = ["EmbeddingService"]
