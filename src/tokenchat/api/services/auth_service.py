from __future__ import annotations

from typing import Any

from jose import JWTError, jwt

from tokenchat.api.middleware.exception_handlers import AuthenticationError
from tokenchat.core.constants import Settings, get_settings
from tokenchat.models.api_models import UserInfo
from tokenchat.models.error_models import ErrorCode


class AuthService:
    """Verifies bearer JWTs issued by the identity provider. Users are not stored locally."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def decode_access_token(self, token: str) -> dict[str, Any]:
        """Decode and validate an access token.

        Raises:
            AuthenticationError: AUTH_INVALID_TOKEN for a bad signature, expiry or missing subject
        """
        options = {"verify_aud": self.settings.jwt_audience is not None}
        try:
            payload: dict[str, Any] = jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
                audience=self.settings.jwt_audience,
                options=options,
            )
        except JWTError as exc:
            raise AuthenticationError(message="Invalid token", code=ErrorCode.AUTH_INVALID_TOKEN) from exc

        if not payload.get("sub"):
            raise AuthenticationError(message="Invalid token", code=ErrorCode.AUTH_INVALID_TOKEN)
        return payload

    def verify(self, token: str) -> UserInfo:
        """Resolve the caller's identity from a bearer token."""
        payload = self.decode_access_token(token)
        return self.user_payload(payload)

    @staticmethod
    def user_payload(claims: dict[str, Any]) -> UserInfo:
        return UserInfo(id=str(claims["sub"]), email=claims.get("email"))
