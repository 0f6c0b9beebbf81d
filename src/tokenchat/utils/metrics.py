"""
Prometheus metrics for tokenchat.

Exposed at /metrics through ``prometheus_client.make_asgi_app()``.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Standard Prometheus naming: namespace_subsystem_name_unit
NAMESPACE = "tokenchat"


# ============================================================================
# Chat Turn Metrics
# ============================================================================

chat_turns_total = Counter(
    f"{NAMESPACE}_chat_turns_total",
    "Chat turns by terminal outcome",
    ["outcome"],  # "completed", "aborted", "failed", "rejected"
)

chat_turn_duration_seconds = Histogram(
    f"{NAMESPACE}_chat_turn_duration_seconds",
    "Wall time of a chat turn from debit to terminal event",
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

time_to_first_chunk_seconds = Histogram(
    f"{NAMESPACE}_time_to_first_chunk_seconds",
    "Latency between requesting a completion and the first streamed chunk",
    ["provider"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

stream_chunks_total = Counter(
    f"{NAMESPACE}_stream_chunks_total",
    "Streamed completion fragments forwarded to clients",
    ["provider"],
)

active_streams = Gauge(
    f"{NAMESPACE}_active_streams",
    "Completions currently streaming with a registered cancellation handle",
)


# ============================================================================
# Token Ledger Metrics
# ============================================================================

tokens_debited_total = Counter(
    f"{NAMESPACE}_tokens_debited_total",
    "Tokens consumed by chat turns",
)

tokens_refunded_total = Counter(
    f"{NAMESPACE}_tokens_refunded_total",
    "Tokens returned after failed chat turns",
)

tokens_credited_total = Counter(
    f"{NAMESPACE}_tokens_credited_total",
    "Tokens credited by signup grants and purchases",
    ["type"],  # "signup_bonus", "purchase"
)

refund_failures_total = Counter(
    f"{NAMESPACE}_refund_failures_total",
    "Refunds that could not be written; each one is a token owed to a user",
)

insufficient_tokens_total = Counter(
    f"{NAMESPACE}_insufficient_tokens_total",
    "Turns rejected because the balance was empty",
)


# ============================================================================
# Retrieval Metrics
# ============================================================================

rag_retrievals_total = Counter(
    f"{NAMESPACE}_rag_retrievals_total",
    "Retrieval attempts by outcome",
    ["outcome"],  # "hit", "miss", "disabled", "error"
)


# ============================================================================
# WebSocket Metrics
# ============================================================================

ws_connections_active = Gauge(
    f"{NAMESPACE}_websocket_connections_active",
    "Number of currently active WebSocket connections",
)

ws_connections_total = Counter(
    f"{NAMESPACE}_websocket_connections_total",
    "Total number of WebSocket connections accepted",
)

ws_messages_total = Counter(
    f"{NAMESPACE}_websocket_messages_total",
    "Total number of WebSocket messages processed",
    ["direction"],  # "inbound" or "outbound"
)


# ============================================================================
# Webhook Metrics
# ============================================================================

webhook_events_total = Counter(
    f"{NAMESPACE}_webhook_events_total",
    "Payment webhook deliveries by outcome",
    ["outcome"],  # "credited", "duplicate", "ignored", "unresolved", "unauthorized", "error"
)
