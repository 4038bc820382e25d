"""Metadata Publisher: OAuth discovery documents per resource.

All documents are pure functions of the resource and the configured base
URL. The issuer for a resource is always ``{base}/api/oauth/{slug}``.
"""

import re
from typing import Any, Optional
from urllib.parse import urlparse

from shared.config import DEFAULT_SCOPES
from shared.models import Resource

DISCOVERY_TYPES = (
    "oauth-protected-resource",
    "oauth-authorization-server",
    "openid-configuration",
)
DEFAULT_DISCOVERY_TYPE = "oauth-protected-resource"

CACHE_HEADERS = {"Cache-Control": "public, max-age=3600"}

_SLUG_IN_PATH = re.compile(r"api/mcp/([^/?#]+)")


def infer_discovery_type(path: str) -> Optional[str]:
    """Pick the discovery document a path asks for, by substring match."""
    for discovery_type in DISCOVERY_TYPES:
        if discovery_type in path:
            return discovery_type
    return None


def extract_slug(value: Optional[str]) -> Optional[str]:
    """Find ``api/mcp/{slug}`` in a path or URL."""
    if not value:
        return None
    match = _SLUG_IN_PATH.search(value)
    return match.group(1) if match else None


def extract_slug_from_resource(resource_uri: Optional[str]) -> Optional[str]:
    """Slug named by an RFC 8707 ``resource`` parameter, or None."""
    if not resource_uri:
        return None
    return extract_slug(urlparse(resource_uri).path or resource_uri)


class MetadataPublisher:
    """Builds discovery documents using a base URL fixed at construction."""

    def __init__(self, base_url: str, scopes_supported: Optional[list[str]] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.scopes_supported = list(scopes_supported or DEFAULT_SCOPES)

    def issuer(self, slug: str) -> str:
        return f"{self.base_url}/api/oauth/{slug}"

    def resource_url(self, slug: str) -> str:
        return f"{self.base_url}/api/mcp/{slug}"

    def protected_resource_metadata_url(self, slug: str) -> str:
        return f"{self.issuer(slug)}/.well-known/oauth-protected-resource"

    def discovery_url(self, slug: str, discovery_type: str = DEFAULT_DISCOVERY_TYPE) -> str:
        return f"{self.issuer(slug)}/.well-known/{discovery_type}"

    def protected_resource(self, resource: Resource) -> dict[str, Any]:
        """RFC 9728 protected resource metadata."""
        return {
            "resource": self.resource_url(resource.slug),
            "authorization_servers": [self.issuer(resource.slug)],
            "scopes_supported": list(self.scopes_supported),
            "bearer_methods_supported": ["header"],
        }

    def authorization_server(self, resource: Resource) -> dict[str, Any]:
        """RFC 8414 metadata. Also served as the OpenID configuration."""
        issuer = self.issuer(resource.slug)
        return {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/authorize",
            "token_endpoint": f"{issuer}/token",
            "introspection_endpoint": f"{issuer}/introspect",
            "registration_endpoint": f"{issuer}/register",
            "revocation_endpoint": f"{issuer}/revoke",
            "scopes_supported": list(self.scopes_supported),
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["none"],
            "client_id_metadata_document_supported": True,
            "jwks_uri": f"{issuer}/.well-known/jwks.json",
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": ["HS256"],
        }

    def jwks(self, resource: Resource) -> dict[str, Any]:
        # Symmetric signing publishes no keys
        return {"keys": []}
