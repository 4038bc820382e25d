"""Bearer authentication for the MCP gateway.

Tokens are validated against the resource named in the request path; a
token minted for another resource never passes. Failed authentication
answers with a challenge pointing at the resource's protected resource
metadata so clients can start the OAuth flow.
"""

from typing import Optional

from fastapi import Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from shared.logging import get_logger
from shared.models import Resource, TokenValidation
from oauth_server.metadata import MetadataPublisher
from oauth_server.tokens import TokenService

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


class GatewayAuthenticator:
    """Validates bearer credentials for a resource."""

    def __init__(self, token_service: TokenService, metadata: MetadataPublisher) -> None:
        self.token_service = token_service
        self.metadata = metadata

    async def authenticate(
        self,
        resource: Resource,
        credentials: Optional[HTTPAuthorizationCredentials],
    ) -> TokenValidation:
        if credentials is None or not credentials.credentials:
            return TokenValidation(valid=False, error="Missing bearer token")

        validation = await self.token_service.validate(credentials.credentials, resource.id)
        if not validation.valid:
            logger.info("Bearer token rejected", slug=resource.slug, reason=validation.error)
        return validation

    def challenge_headers(self, slug: str) -> dict[str, str]:
        """``WWW-Authenticate`` header for a 401 answer."""
        url = self.metadata.protected_resource_metadata_url(slug)
        return {"WWW-Authenticate": f'Bearer resource_metadata="{url}"'}


def get_client_ip(request: Request) -> Optional[str]:
    """Caller address from proxy headers, falling back to the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return request.client.host if request.client else None
