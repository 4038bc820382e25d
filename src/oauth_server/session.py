"""Login session handling for the authorization endpoint.

The login page itself lives outside this service. It issues an HS256 JWT
with audience ``session`` which the authorize endpoint reads from the
session cookie or an ``Authorization: Bearer`` header.
"""

from datetime import timedelta
from typing import Optional

from fastapi import Request
from jose import JWTError, jwt

from shared.config import OAuthSettings
from shared.logging import get_logger
from shared.models import UserContext, utcnow

logger = get_logger(__name__)

SESSION_AUDIENCE = "session"


class SessionAuthenticator:
    """Creates and verifies login session tokens."""

    def __init__(self, settings: OAuthSettings, session_ttl_seconds: int = 3600) -> None:
        self.secret = settings.effective_session_secret
        self.algorithm = settings.jwt_algorithm
        self.cookie_name = settings.session_cookie_name
        self.session_ttl_seconds = session_ttl_seconds

    def create_session_token(self, user: UserContext) -> str:
        """
        Create a session token for a user.

        Used by the login collaborator and by tests.
        """
        now = utcnow()
        payload = {
            "sub": user.user_id,
            "email": user.email,
            "aud": SESSION_AUDIENCE,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.session_ttl_seconds)).timestamp()),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Optional[UserContext]:
        """Decode a session token. Returns None when it is invalid or expired."""
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=SESSION_AUDIENCE,
            )
        except JWTError as e:
            logger.debug("Session verification failed", error=str(e))
            return None

        user_id = payload.get("sub")
        if not user_id:
            return None
        return UserContext(user_id=user_id, email=payload.get("email"))

    def from_request(self, request: Request) -> Optional[UserContext]:
        """Read the session from the cookie first, then from a bearer header."""
        token = request.cookies.get(self.cookie_name)
        if not token:
            header = request.headers.get("authorization", "")
            scheme, _, credentials = header.partition(" ")
            if scheme.lower() == "bearer" and credentials:
                token = credentials.strip()

        if not token:
            return None
        return self.verify(token)
