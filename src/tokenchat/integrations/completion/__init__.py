"""Streaming LLM completion backends behind one ``CompletionBackend`` interface."""

from __future__ import annotations

from tokenchat.integrations.completion.base import (
    ChatMessages,
    CompletionBackend,
    CompletionChunk,
    CompletionStream,
)
from tokenchat.integrations.completion.factory import MisconfiguredBackend, create_completion_backend

__all__ = [
    "ChatMessages",
    "CompletionBackend",
    "CompletionChunk",
    "CompletionStream",
    "MisconfiguredBackend",
    "create_completion_backend",
]
