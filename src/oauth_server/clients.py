"""Dynamic client registration (RFC 7591).

Client ids are URLs under the resource's issuer so they double as
Client ID Metadata Document locations.
"""

import asyncio
import uuid
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import ValidationError

from shared.errors import InvalidClientMetadataError, InvalidRedirectURIError
from shared.logging import get_logger
from shared.models import ClientRegistration, Resource, utcnow

logger = get_logger(__name__)

LOCAL_HOSTS = ("localhost", "127.0.0.1")


def validate_redirect_uri(uri: Any) -> None:
    """
    Redirect URIs must be HTTPS, or any scheme on a loopback host.

    Raises:
        InvalidRedirectURIError: If the URI is malformed or not allowed
    """
    if not isinstance(uri, str):
        raise InvalidRedirectURIError("Invalid redirect URI format")
    parsed = urlparse(uri)
    if not parsed.scheme or not parsed.netloc:
        raise InvalidRedirectURIError("Invalid redirect URI format")
    if parsed.scheme != "https" and parsed.hostname not in LOCAL_HOSTS:
        raise InvalidRedirectURIError("Redirect URIs must use HTTPS or localhost")


class ClientRegistry:
    """Registered OAuth clients, keyed by client id."""

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")
        self._clients: dict[str, ClientRegistration] = {}
        self._lock = asyncio.Lock()

    async def register(self, resource: Resource, metadata: dict[str, Any]) -> ClientRegistration:
        """
        Register a client for a resource.

        Raises:
            InvalidClientMetadataError: If client_name or redirect_uris is missing,
                or any field has the wrong type
            InvalidRedirectURIError: If a redirect URI is not allowed
        """
        client_name = metadata.get("client_name")
        redirect_uris = metadata.get("redirect_uris")
        if not client_name or not isinstance(redirect_uris, list) or not redirect_uris:
            raise InvalidClientMetadataError("Missing required fields: client_name, redirect_uris")

        for uri in redirect_uris:
            validate_redirect_uri(uri)

        try:
            client = ClientRegistration(
                client_id=f"{self.base_url}/api/oauth/{resource.slug}/clients/{uuid.uuid4()}",
                client_id_issued_at=int(utcnow().timestamp()),
                client_name=client_name,
                client_uri=metadata.get("client_uri"),
                logo_uri=metadata.get("logo_uri"),
                redirect_uris=redirect_uris,
                grant_types=metadata.get("grant_types") or ["authorization_code"],
                response_types=metadata.get("response_types") or ["code"],
                token_endpoint_auth_method=metadata.get("token_endpoint_auth_method") or "none",
            )
        except ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
            raise InvalidClientMetadataError(f"Invalid client metadata: {fields}") from e

        async with self._lock:
            self._clients[client.client_id] = client

        logger.info("Client registered", slug=resource.slug, client_name=client_name)
        return client

    async def get(self, client_id: str) -> Optional[ClientRegistration]:
        return self._clients.get(client_id)
