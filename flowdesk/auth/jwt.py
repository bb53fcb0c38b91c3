"""JWT token management: create and validate user tokens."""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from flowdesk.config import FlowdeskConfig, config as default_config
from flowdesk.exceptions import FlowdeskError


class JWTManager:
    """JWT token management."""

    def __init__(self, config: Optional[FlowdeskConfig] = None) -> None:
        self._config = config or default_config

    async def create_token(self, user_id: str, email: str = "") -> str:
        """Create a JWT for *user_id*, valid for ``jwt_expiry_minutes``."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "email": email,
            "exp": now + timedelta(minutes=self._config.jwt_expiry_minutes),
            "iat": now,
        }
        return jwt.encode(payload, self._config.secret_key, algorithm=self._config.jwt_algorithm)

    async def verify_token(self, token: str) -> dict:
        """Verify and decode a JWT.

        Returns:
            {"user_id": str, "email": str}

        Raises:
            FlowdeskError: On invalid/expired token
        """
        try:
            payload = jwt.decode(
                token, self._config.secret_key, algorithms=[self._config.jwt_algorithm]
            )
        except jwt.ExpiredSignatureError:
            raise FlowdeskError("Token expired")
        except jwt.InvalidTokenError:
            raise FlowdeskError("Invalid token")
        if not payload.get("sub"):
            raise FlowdeskError("Invalid token")
        return {"user_id": payload["sub"], "email": payload.get("email", "")}

    def user_for_api_key(self, api_key: str) -> Optional[str]:
        """User id an API key belongs to, or None."""
        for key, user_id in self._config.api_keys.items():
            if hmac.compare_digest(key, api_key):
                return user_id
        if self._config.environment != "production" and hmac.compare_digest(
            self._config.demo_api_key, api_key
        ):
            return self._config.demo_user_id
        return None
