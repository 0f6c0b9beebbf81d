"""
Models Module - Data Models and Type Definitions
=================================================

Pydantic v2 models for request validation, wire events and API responses.
Everything that crosses the wire serializes with camelCase aliases, while
Python code uses snake_case attribute names.

Modules:
    api_models: Authenticated user and health payloads
    billing_models: Token transactions, balances and pack catalogue responses
    chat_models: Inbound chat requests, conversations, messages and citations
    error_models: Error codes, REST error envelope and WebSocket error frame
    event_models: Outbound chat turn events shared by the WebSocket and SSE transports
"""
