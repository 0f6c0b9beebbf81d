"""
Retrieval-augmented generation: query embedding, vector search and prompt context.

Retrieval is best-effort from the orchestrator's point of view; this module
reports failures as ``RetrievalError`` and the caller decides to carry on
without context.
"""

from __future__ import annotations

import json

from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID

import asyncpg

from tokenchat.api.middleware.exception_handlers import RetrievalError
from tokenchat.core.constants import Settings
from tokenchat.integrations.embedding_service import EmbeddingService
from tokenchat.models.chat_models import SourceCitation
from tokenchat.models.error_models import ErrorCode
from tokenchat.utils.logger import logger


def _embedding_to_pgvector(embedding: list[float]) -> str:
    """Convert embedding list to pgvector string format."""
    return "[" + ",".join(str(x) for x in embedding) + "]"


@dataclass(frozen=True)
class RetrievedChunk:
    """One document chunk matched for a query. Never persisted."""

    chunk_id: UUID
    document_id: UUID
    content: str
    similarity: float
    document_title: str
    document_source: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetrievalResult:
    chunks: list[RetrievedChunk]
    query: str
    total_matches: int
    filtered_count: int

    @classmethod
    def empty(cls, query: str) -> RetrievalResult:
        return cls(chunks=[], query=query, total_matches=0, filtered_count=0)


class Retriever(Protocol):
    async def retrieve(self, query: str) -> RetrievalResult: ...


def format_context_for_prompt(chunks: list[RetrievedChunk]) -> str:
    """Numbered reference blocks for the RAG system prompt; empty string without chunks."""
    if not chunks:
        return ""
    return "\n\n".join(
        f"[{i}] {chunk.document_title} ({chunk.document_source})\n{chunk.content}"
        for i, chunk in enumerate(chunks, start=1)
    )


def build_citations(chunks: list[RetrievedChunk]) -> list[SourceCitation]:
    """Citation list parallel to ``format_context_for_prompt`` numbering."""
    return [
        SourceCitation(index=i, title=chunk.document_title, source=chunk.document_source)
        for i, chunk in enumerate(chunks, start=1)
    ]


def _row_to_chunk(row: asyncpg.Record | dict[str, Any]) -> RetrievedChunk:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return RetrievedChunk(
        chunk_id=row["chunk_id"],
        document_id=row["document_id"],
        content=row["content"],
        similarity=float(row["similarity"]),
        document_title=row["document_title"],
        document_source=row["document_source"],
        metadata=metadata or {},
    )


class RetrievalService:
    """Embeds a query and returns the best matching document chunks above the similarity threshold."""

    def __init__(self, pool: asyncpg.Pool, embedding_service: EmbeddingService, settings: Settings):
        self.pool = pool
        self.embedding_service = embedding_service
        self.settings = settings

    async def retrieve(self, query: str) -> RetrievalResult:
        """Run one retrieval.

        Raises:
            RetrievalError: EMBEDDING_FAILED from the embedding call, RETRIEVAL_FAILED otherwise
        """
        if not self.settings.rag_enabled:
            return RetrievalResult.empty(query)

        try:
            embedding = await self.embedding_service.embed_text(query)
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT chunk_id, document_id, content, similarity, metadata,
                           document_title, document_source
                    FROM match_chunks($1::vector, $2)
                    """,
                    _embedding_to_pgvector(embedding),
                    self.settings.rag_match_count,
                )
        except RetrievalError:
            raise
        except Exception as e:
            raise RetrievalError(
                code=ErrorCode.RETRIEVAL_FAILED,
                message=f"Failed to retrieve chunks: {e}",
                cause=e,
            ) from e

        matches = [_row_to_chunk(r) for r in rows]
        filtered = [c for c in matches if c.similarity >= self.settings.rag_similarity_threshold]
        chunks = filtered[: self.settings.rag_max_chunks]

        logger.debug(
            "Retrieved context chunks",
            total_matches=len(matches),
            filtered_count=len(filtered),
            used=len(chunks),
        )
        return RetrievalResult(
            chunks=chunks,
            query=query,
            total_matches=len(matches),
            filtered_count=len(filtered),
        )


__all__ = [
    "RetrievalResult",
    "RetrievalService",
    "RetrievedChunk",
    "Retriever",
    "build_citations",
    "format_context_for_prompt",
]
