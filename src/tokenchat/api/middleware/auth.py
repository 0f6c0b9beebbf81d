from __future__ import annotations

from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tokenchat.api.dependencies import AppSettings
from tokenchat.api.middleware.exception_handlers import AuthenticationError
from tokenchat.api.middleware.request_context import bind
from tokenchat.api.services.auth_service import AuthService
from tokenchat.core.constants import Settings
from tokenchat.models.api_models import UserInfo

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    settings: AppSettings,
) -> UserInfo:
    """Authenticate incoming REST requests."""
    if credentials is None:
        raise AuthenticationError(message="Not authenticated")

    user = AuthService(settings).verify(credentials.credentials)
    bind(user_id=user.id)
    return user


def get_current_user_from_token(token: str | None, settings: Settings) -> UserInfo:
    """Authenticate WebSocket connections via query token."""
    if not token:
        raise AuthenticationError(message="Not authenticated")
    return AuthService(settings).verify(token)


CurrentUser = Annotated[UserInfo, Depends(get_current_user)]
