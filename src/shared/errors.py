"""Error taxonomy for the gateway and the authorization server.

Every error carries the HTTP status and the OAuth error code it maps to at the
boundary. Tool-call scoped errors (transformation, downstream) are converted
into protocol error content by the dispatcher instead of failing the request.
"""

from typing import Any, Optional


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    status_code: int = 500
    error_code: str = "server_error"

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_oauth(self) -> dict[str, str]:
        """Render as an OAuth 2.0 error body."""
        return {"error": self.error_code, "error_description": self.message}


class NotFoundError(GatewayError):
    """Unknown or disabled resource, unknown tool."""
    status_code = 404
    error_code = "invalid_resource"


class AccessDeniedError(GatewayError):
    """Grant or ownership check failed."""
    status_code = 403
    error_code = "access_denied"


class InvalidRequestError(GatewayError):
    """Missing or malformed parameters."""
    status_code = 400
    error_code = "invalid_request"


class InvalidGrantError(GatewayError):
    """Expired, consumed or mismatched authorization code or token."""
    status_code = 400
    error_code = "invalid_grant"


class InvalidScopeError(GatewayError):
    status_code = 400
    error_code = "invalid_scope"


class InvalidTargetError(GatewayError):
    status_code = 400
    error_code = "invalid_target"


class UnsupportedGrantTypeError(GatewayError):
    status_code = 400
    error_code = "unsupported_grant_type"


class UnsupportedResponseTypeError(GatewayError):
    status_code = 400
    error_code = "unsupported_response_type"


class InvalidClientMetadataError(GatewayError):
    status_code = 400
    error_code = "invalid_client_metadata"


class InvalidRedirectURIError(GatewayError):
    status_code = 400
    error_code = "invalid_redirect_uri"


class TransformationError(GatewayError):
    """Argument mapping failed for a single field."""
    status_code = 400
    error_code = "transformation_failed"

    def __init__(self, message: str, api_field: Optional[str] = None) -> None:
        super().__init__(message, api_field=api_field)
        self.api_field = api_field


class DownstreamError(GatewayError):
    """The proxied API call failed or timed out."""
    status_code = 502
    error_code = "downstream_failed"

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message, status=status)
        self.status = status


class ServerError(GatewayError):
    """Unexpected internal fault. The message shown to clients is always generic."""
    status_code = 500
    error_code = "server_error"


class StoreUnavailableError(ServerError):
    """The backing store could not serve the request."""
