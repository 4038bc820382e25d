"""Per-resource OAuth 2.1 authorization server.

Each MCP is its own issuer at ``{base}/api/oauth/{slug}``.
"""

from oauth_server.access import AccessControl
from oauth_server.clients import ClientRegistry
from oauth_server.metadata import MetadataPublisher
from oauth_server.session import SessionAuthenticator
from oauth_server.tokens import TokenService, TokenStore

__all__ = [
    "AccessControl",
    "ClientRegistry",
    "MetadataPublisher",
    "SessionAuthenticator",
    "TokenService",
    "TokenStore",
]
