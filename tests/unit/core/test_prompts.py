"""Tests for system prompts and model context assembly."""

from __future__ import annotations

import copy

from tokenchat.core.prompts import SYSTEM_PROMPT, build_messages, build_system_prompt


def _history(count: int) -> list[dict[str, str]]:
    return [{"role": "user" if i % 2 == 0 else "assistant", "content": f"message {i}"} for i in range(count)]


class TestBuildMessages:
    """Tests for build_messages."""

    def test_truncates_to_most_recent_window(self) -> None:
        """Test that 60 messages become 1 system + the last 50, in order."""
        history = _history(60)

        messages = build_messages(history)

        assert len(messages) == 51
        assert messages[0]["role"] == "system"
        assert [m["content"] for m in messages[1:]] == [f"message {i}" for i in range(10, 60)]

    def test_short_history_kept_whole(self) -> None:
        """Test that histories under the window are not trimmed."""
        messages = build_messages(_history(3))
        assert len(messages) == 4

    def test_custom_window(self) -> None:
        """Test an explicit window size."""
        messages = build_messages(_history(10), window=2)
        assert [m["content"] for m in messages[1:]] == ["message 8", "message 9"]

    def test_plain_prompt_without_context(self) -> None:
        """Test that no RAG context yields the plain system prompt."""
        messages = build_messages(_history(2))
        assert messages[0]["content"] == SYSTEM_PROMPT

    def test_empty_context_uses_plain_prompt(self) -> None:
        """Test that an empty context string is treated as no context."""
        assert build_messages(_history(1), "")[0]["content"] == SYSTEM_PROMPT

    def test_rag_prompt_contains_context_and_citations(self) -> None:
        """Test that context is embedded with citation instructions."""
        ctx = "[1] Handbook (handbook.pdf)\nThe office opens at 9."

        system = build_messages(_history(1), ctx)[0]["content"]

        assert ctx in system
        assert "<reference_material>" in system
        assert "[1], [2]" in system
        assert system.startswith(SYSTEM_PROMPT)

    def test_context_with_braces_is_literal(self) -> None:
        """Test that retrieved text containing braces is inserted verbatim."""
        ctx = "config = {key: value} and {context}"
        assert ctx in build_system_prompt(ctx)

    def test_pure(self) -> None:
        """Test identical inputs give identical output and inputs are untouched."""
        history = _history(55)
        snapshot = copy.deepcopy(history)

        first = build_messages(history, "ctx")
        second = build_messages(history, "ctx")

        assert first == second
        assert history == snapshot
        first[1]["content"] = "mutated"
        assert history[5]["content"] == "message 5"

    def test_drops_extra_fields(self) -> None:
        """Test that only role and content reach the model."""
        history = [{"role": "user", "content": "hi", "id": "m1", "created_at": "2025-01-01"}]
        assert build_messages(history)[1] == {"role": "user", "content": "hi"}
