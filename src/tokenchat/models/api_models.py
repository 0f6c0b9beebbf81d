"""
API models shared by auth and operational endpoints.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class UserInfo(BaseModel):
    """Verified identity of the caller, resolved once per request or connection."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str | None = None


class HealthResponse(BaseModel):
    """Health check payload."""

    status: str
    version: str
    timestamp: str
    database: dict[str, Any]
    websocket: dict[str, Any]
    active_streams: int
    llm_provider: str


__all__ = ["HealthResponse", "UserInfo"]
