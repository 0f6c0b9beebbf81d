"""
Server-sent events helpers.

Inbound: ``SSELineBuffer`` reassembles lines split across network reads and
``parse_sse_line`` turns one line of an OpenAI-compatible completion stream
into a typed event. Outbound: ``encode_sse`` frames a payload for a
``text/event-stream`` response.
"""

from __future__ import annotations

import codecs
import json

from dataclasses import dataclass
from enum import Enum
from typing import Any

from tokenchat.core.constants import SSE_DATA_PREFIX, SSE_DONE_SENTINEL


class SSEEventKind(str, Enum):
    CONTENT = "content"
    DONE = "done"
    SKIP = "skip"


@dataclass(frozen=True, slots=True)
class SSEEvent:
    kind: SSEEventKind
    content: str = ""


SKIP = SSEEvent(SSEEventKind.SKIP)
DONE = SSEEvent(SSEEventKind.DONE)


class SSELineBuffer:
    """Push-based line reassembly.

    Feed raw bytes as they arrive; complete lines come back out, and a
    trailing partial line is held until the next feed or ``flush``. UTF-8
    sequences split across reads are decoded correctly.

    Example:
        buffer = SSELineBuffer()
        buffer.feed(b'data: {"a"')   # []
        buffer.feed(b': 1}\\n')       # ['data: {"a": 1}']
    """

    __slots__ = ("_decoder", "_pending")

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> list[str]:
        self._pending += self._decoder.decode(data)
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return whatever is left once the stream has ended."""
        tail = (self._pending + self._decoder.decode(b"", final=True)).rstrip("\r")
        self._pending = ""
        return [tail] if tail else []


def parse_sse_line(line: str) -> SSEEvent:
    """Classify one completion stream line.

    Non-``data:`` lines, malformed JSON and payloads without text content are
    skipped; they never abort the stream.
    """
    stripped = line.strip()
    if not stripped.startswith(SSE_DATA_PREFIX):
        return SKIP

    data = stripped[len(SSE_DATA_PREFIX) :]
    if data == SSE_DONE_SENTINEL:
        return DONE

    try:
        payload = json.loads(data)
        content = payload["choices"][0]["delta"]["content"]
    except (ValueError, KeyError, IndexError, TypeError):
        return SKIP

    if not isinstance(content, str) or not content:
        return SKIP
    return SSEEvent(SSEEventKind.CONTENT, content)


def encode_sse(payload: dict[str, Any] | str) -> str:
    """Frame one SSE event. Strings are written raw (used for the ``[DONE]`` terminator)."""
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"{SSE_DATA_PREFIX}{data}\n\n"


__all__ = [
    "DONE",
    "SKIP",
    "SSEEvent",
    "SSEEventKind",
    "SSELineBuffer",
    "encode_sse",
    "parse_sse_line",
]
