"""Token Service: authorization codes, access and refresh tokens.

Access tokens are HS256 JWTs whose audience is the resource id, so a token
minted for one MCP can never validate against another. Every token is also
persisted; validation requires both a good signature and a live record.
"""

import asyncio
import secrets
from datetime import timedelta
from typing import Optional

from jose import JWTError, jwt
from tenacity import retry, retry_if_result, stop_after_attempt, wait_incrementing

from shared.config import OAuthSettings
from shared.errors import (
    AccessDeniedError,
    InvalidGrantError,
    InvalidScopeError,
)
from shared.logging import get_logger
from shared.models import (
    AuthorizationCode,
    IntrospectionResponse,
    Resource,
    TokenRecord,
    TokenResponse,
    TokenValidation,
    utcnow,
)
from oauth_server.access import AccessControl
from oauth_server.pkce import verify_pkce

logger = get_logger(__name__)


def _same_redirect(a: str, b: str) -> bool:
    return a.rstrip("/") == b.rstrip("/")


class TokenStore:
    """
    In-process store for codes and tokens.

    Code consumption and token insertion happen under the store lock, so a
    code is consumed at most once and an access token string is never stored
    twice.
    """

    def __init__(self) -> None:
        self._codes: dict[str, AuthorizationCode] = {}
        self._tokens: dict[str, TokenRecord] = {}
        self._refresh_index: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def save_code(self, code: AuthorizationCode) -> None:
        async with self._lock:
            if code.code in self._codes:
                raise ValueError("Authorization code already exists")
            self._codes[code.code] = code

    async def get_code(self, code: str) -> Optional[AuthorizationCode]:
        return self._codes.get(code)

    async def consume_code(self, code: str) -> bool:
        """Mark a code used. Returns False if it was already used or does not exist."""
        async with self._lock:
            record = self._codes.get(code)
            if record is None or record.used_at is not None:
                return False
            record.used_at = utcnow()
            return True

    async def save_token(self, record: TokenRecord) -> None:
        async with self._lock:
            if record.access_token in self._tokens:
                raise ValueError("Access token already exists")
            self._tokens[record.access_token] = record
            if record.refresh_token:
                self._refresh_index[record.refresh_token] = record.access_token

    async def get_by_access_token(self, token: str) -> Optional[TokenRecord]:
        return self._tokens.get(token)

    async def get_by_refresh_token(self, token: str) -> Optional[TokenRecord]:
        access_token = self._refresh_index.get(token)
        return self._tokens.get(access_token) if access_token else None

    async def revoke(self, access_token: str) -> bool:
        async with self._lock:
            record = self._tokens.get(access_token)
            if record is None or record.revoked_at is not None:
                return False
            record.revoked_at = utcnow()
            return True


class TokenService:
    """
    Issues and validates codes and tokens for a resource.

    Responsibilities:
    - Issue single-use authorization codes gated by access control
    - Exchange codes for tokens with PKCE verification
    - Rotate refresh tokens
    - Validate, introspect and revoke access tokens
    """

    def __init__(
        self,
        settings: OAuthSettings,
        access_control: AccessControl,
        store: Optional[TokenStore] = None,
    ) -> None:
        self.settings = settings
        self.access_control = access_control
        self.store = store or TokenStore()

    # -- scopes -------------------------------------------------------------

    def parse_scope(self, scope: Optional[str]) -> list[str]:
        """
        Split a scope string, defaulting to every supported scope.

        Raises:
            InvalidScopeError: If any scope is not supported
        """
        scopes = (scope or "").split()
        if not scopes:
            return list(self.settings.scopes_supported)

        unsupported = [s for s in scopes if s not in self.settings.scopes_supported]
        if unsupported:
            raise InvalidScopeError(f"Unsupported scope: {' '.join(unsupported)}")
        return scopes

    # -- authorization codes ------------------------------------------------

    async def issue_code(
        self,
        resource: Resource,
        user_id: str,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        scope: Optional[str] = None,
        resource_uri: Optional[str] = None,
    ) -> AuthorizationCode:
        """
        Issue an authorization code bound to the resource and redirect URI.

        Raises:
            AccessDeniedError: If the user may not access the resource
            InvalidScopeError: If an unsupported scope is requested
        """
        decision = await self.access_control.check(resource, user_id)
        if not decision.allowed:
            raise AccessDeniedError(decision.reason or "Access denied", slug=resource.slug)

        scopes = self.parse_scope(scope)
        now = utcnow()
        code = AuthorizationCode(
            code=secrets.token_urlsafe(32),
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            scope=" ".join(scopes),
            resource=resource_uri or resource.slug,
            user_id=user_id,
            resource_id=resource.id,
            expires_at=now + timedelta(seconds=self.settings.authorization_code_ttl_seconds),
            created_at=now,
        )
        await self.store.save_code(code)

        logger.info("Authorization code issued", slug=resource.slug, user=user_id, client_id=client_id)
        return code

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_incrementing(start=0.1, increment=0.1),
        retry=retry_if_result(lambda code: code is None),
        retry_error_callback=lambda state: None,
    )
    async def _lookup_code(self, code: str) -> Optional[AuthorizationCode]:
        return await self.store.get_code(code)

    async def exchange_code(
        self,
        resource: Resource,
        code: str,
        code_verifier: str,
        client_id: str,
        redirect_uri: str,
    ) -> TokenResponse:
        """
        Exchange an authorization code for tokens.

        Raises:
            InvalidGrantError: For unknown, expired, consumed or mismatched codes
        """
        record = await self._lookup_code(code)
        if record is None or record.resource_id != resource.id:
            raise InvalidGrantError("Invalid or expired authorization code")
        if record.used_at is not None:
            raise InvalidGrantError("Authorization code has already been used")
        if record.expires_at < utcnow():
            raise InvalidGrantError("Authorization code has expired")

        if not verify_pkce(code_verifier, record.code_challenge, record.code_challenge_method):
            raise InvalidGrantError("Invalid code verifier (PKCE verification failed)")

        if not await self.store.consume_code(code):
            raise InvalidGrantError("Authorization code has already been used")

        if record.client_id != client_id:
            raise InvalidGrantError("Client ID mismatch")
        if not _same_redirect(record.redirect_uri, redirect_uri):
            raise InvalidGrantError("Redirect URI mismatch")

        response = await self._mint(resource, record.user_id, record.scope.split(), client_id)
        logger.info("Authorization code exchanged", slug=resource.slug, user=record.user_id)
        return response

    # -- tokens -------------------------------------------------------------

    async def _mint(
        self,
        resource: Resource,
        user_id: str,
        scopes: list[str],
        client_id: Optional[str],
    ) -> TokenResponse:
        now = utcnow()
        ttl = self.settings.access_token_ttl_seconds
        expires_at = now + timedelta(seconds=ttl)
        scope = " ".join(scopes)

        payload = {
            "sub": user_id,
            "aud": resource.id,
            "scope": scope,
            "client_id": client_id,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": secrets.token_urlsafe(16),
        }
        access_token = jwt.encode(payload, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)
        refresh_token = secrets.token_urlsafe(32)

        await self.store.save_token(TokenRecord(
            access_token=access_token,
            refresh_token=refresh_token,
            scopes=scopes,
            client_id=client_id,
            user_id=user_id,
            resource_id=resource.id,
            expires_at=expires_at,
            refresh_expires_at=now + timedelta(seconds=self.settings.refresh_token_ttl_seconds),
            created_at=now,
        ))

        return TokenResponse(
            access_token=access_token,
            expires_in=ttl,
            refresh_token=refresh_token,
            scope=scope,
        )

    async def refresh(
        self,
        resource: Resource,
        refresh_token: str,
        client_id: Optional[str] = None,
    ) -> TokenResponse:
        """
        Rotate a refresh token: the old pair is revoked and a new pair issued.

        Raises:
            InvalidGrantError: If the refresh token is unknown, revoked or expired
        """
        record = await self.store.get_by_refresh_token(refresh_token)
        if record is None or record.resource_id != resource.id:
            raise InvalidGrantError("Invalid refresh token")
        if record.revoked_at is not None:
            raise InvalidGrantError("Refresh token has been revoked")
        if record.refresh_expires_at is not None and record.refresh_expires_at < utcnow():
            raise InvalidGrantError("Refresh token has expired")
        if client_id and record.client_id and client_id != record.client_id:
            raise InvalidGrantError("Client ID mismatch")

        if not await self.store.revoke(record.access_token):
            raise InvalidGrantError("Refresh token has already been used")

        logger.info("Refresh token rotated", slug=resource.slug, user=record.user_id)
        return await self._mint(resource, record.user_id, record.scopes, record.client_id)

    async def validate(self, token: str, resource_id: str) -> TokenValidation:
        """Validate an access token for one resource. Never raises for bad tokens."""
        try:
            claims = jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
                audience=resource_id,
            )
        except JWTError as e:
            return TokenValidation(valid=False, error=str(e))

        record = await self.store.get_by_access_token(token)
        if record is None:
            return TokenValidation(valid=False, error="Token not found")
        if record.revoked_at is not None:
            return TokenValidation(valid=False, error="Token revoked")
        if record.expires_at < utcnow():
            return TokenValidation(valid=False, error="Token expired")
        if record.resource_id != resource_id:
            return TokenValidation(valid=False, error="Token not valid for this MCP")

        return TokenValidation(valid=True, claims=claims)

    async def introspect(self, token: str, resource_id: str) -> IntrospectionResponse:
        """
        RFC 7662 introspection against the token store.

        Store failures propagate so the caller answers with a server error
        instead of a guess.
        """
        record = await self.store.get_by_access_token(token)
        if (
            record is None
            or record.revoked_at is not None
            or record.expires_at < utcnow()
            or record.resource_id != resource_id
        ):
            return IntrospectionResponse(active=False)

        return IntrospectionResponse(
            active=True,
            scope=record.scope,
            client_id=record.client_id,
            sub=record.user_id,
            exp=int(record.expires_at.timestamp()),
            aud=record.resource_id,
            token_type=record.token_type,
        )

    async def revoke(self, token: str, resource_id: Optional[str] = None) -> bool:
        """RFC 7009 revocation of an access or refresh token. Unknown tokens are ignored."""
        record = await self.store.get_by_access_token(token)
        if record is None:
            record = await self.store.get_by_refresh_token(token)
        if record is None:
            return False
        if resource_id is not None and record.resource_id != resource_id:
            return False

        revoked = await self.store.revoke(record.access_token)
        if revoked:
            logger.info("Token revoked", resource_id=record.resource_id, user=record.user_id)
        return revoked
