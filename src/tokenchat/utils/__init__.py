"""Shared utilities: logging, database helpers, metrics, HTTP clients and SSE framing."""
