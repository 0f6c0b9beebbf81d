"""
Standardized error response models for the tokenchat API.

Provides consistent error formatting across REST, SSE and WebSocket endpoints
with support for request tracking and error categorization. Error code values
are part of the wire protocol: clients switch on them, so they never change.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    """Application-specific error codes for categorization."""

    # Authentication
    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INVALID_TOKEN = "AUTH_INVALID_TOKEN"
    ACCESS_DENIED = "ACCESS_DENIED"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    WS_MESSAGE_INVALID = "WS_MESSAGE_INVALID"

    # Token ledger / billing
    INSUFFICIENT_TOKENS = "INSUFFICIENT_TOKENS"
    INVALID_PACK = "INVALID_PACK"
    SIGNUP_ALREADY_GRANTED = "SIGNUP_ALREADY_GRANTED"

    # Conversations
    CONVERSATION_NOT_FOUND = "CONVERSATION_NOT_FOUND"
    TURN_IN_PROGRESS = "TURN_IN_PROGRESS"

    # Completion backends
    LLM_CONFIG_ERROR = "LLM_CONFIG_ERROR"
    OPENROUTER_ERROR = "OPENROUTER_ERROR"
    AZURE_OPENAI_ERROR = "AZURE_OPENAI_ERROR"
    STREAM_ERROR = "STREAM_ERROR"
    COMPLETION_TIMEOUT = "COMPLETION_TIMEOUT"

    # Retrieval
    EMBEDDING_FAILED = "EMBEDDING_FAILED"
    RETRIEVAL_FAILED = "RETRIEVAL_FAILED"

    # Payment webhooks
    WEBHOOK_UNAUTHORIZED = "WEBHOOK_UNAUTHORIZED"
    WEBHOOK_PAYLOAD_INVALID = "WEBHOOK_PAYLOAD_INVALID"

    # Infrastructure
    DATABASE_ERROR = "DATABASE_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    INTERNAL_UNEXPECTED = "INTERNAL_UNEXPECTED"


class ErrorDetail(BaseModel):
    """Detailed information about a specific validation or sub-error."""

    field: str | None = None
    message: str
    code: str | None = None


class ErrorResponse(BaseModel):
    """Standardized error response model for REST endpoints.

    Example response:
    {
        "error": {
            "code": "CONVERSATION_NOT_FOUND",
            "message": "Conversation not found",
            "request_id": "req_abc123",
            "timestamp": "2025-01-15T10:30:00Z",
            "path": "/api/v1/conversations/6f1c..."
        }
    }
    """

    code: ErrorCode
    message: str
    request_id: str | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    details: list[ErrorDetail] | None = None
    path: str | None = None
    # Debug info - only included in development mode
    debug: dict[str, Any] | None = Field(default=None, exclude=True)

    def to_dict(self, include_debug: bool = False) -> dict[str, Any]:
        """Convert to dictionary for JSON response."""
        data = self.model_dump(mode="json", exclude_none=True)
        if include_debug and self.debug:
            data["debug"] = self.debug
        return {"error": data}


class WebSocketError(BaseModel):
    """Error frame for the chat socket.

    Example:
    {"type": "error", "code": "INSUFFICIENT_TOKENS", "message": "Insufficient tokens"}
    """

    type: str = "error"
    code: ErrorCode
    message: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for WebSocket JSON message."""
        return self.model_dump(mode="json")


# HTTP status code mappings for error codes
ERROR_CODE_TO_STATUS: dict[ErrorCode, int] = {
    # 400 Bad Request
    ErrorCode.INVALID_PACK: 400,
    ErrorCode.WS_MESSAGE_INVALID: 400,
    ErrorCode.WEBHOOK_PAYLOAD_INVALID: 400,
    # 401 Unauthorized
    ErrorCode.AUTH_REQUIRED: 401,
    ErrorCode.AUTH_INVALID_TOKEN: 401,
    ErrorCode.WEBHOOK_UNAUTHORIZED: 401,
    # 402 Payment Required
    ErrorCode.INSUFFICIENT_TOKENS: 402,
    # 403 Forbidden
    ErrorCode.ACCESS_DENIED: 403,
    # 404 Not Found
    ErrorCode.CONVERSATION_NOT_FOUND: 404,
    # 409 Conflict
    ErrorCode.TURN_IN_PROGRESS: 409,
    ErrorCode.SIGNUP_ALREADY_GRANTED: 409,
    # 422 Unprocessable Entity
    ErrorCode.VALIDATION_ERROR: 422,
    # 500 Internal Server Error
    ErrorCode.LLM_CONFIG_ERROR: 500,
    ErrorCode.STREAM_ERROR: 500,
    ErrorCode.RETRIEVAL_FAILED: 500,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.INTERNAL_UNEXPECTED: 500,
    # 502 Bad Gateway
    ErrorCode.OPENROUTER_ERROR: 502,
    ErrorCode.AZURE_OPENAI_ERROR: 502,
    ErrorCode.EMBEDDING_FAILED: 502,
    # 503 Service Unavailable
    ErrorCode.SERVICE_UNAVAILABLE: 503,
    # 504 Gateway Timeout
    ErrorCode.COMPLETION_TIMEOUT: 504,
}


def get_status_code(error_code: ErrorCode) -> int:
    """Get HTTP status code for an error code."""
    return ERROR_CODE_TO_STATUS.get(error_code, 500)


__all__ = [
    "ERROR_CODE_TO_STATUS",
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    "WebSocketError",
    "get_status_code",
]
