"""Core data models for the MCP OAuth gateway.

This module defines the shared records (resources, tools, mappings, grants,
codes, tokens, usage) and the wire shapes of the OAuth and JSON-RPC surfaces.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from shared.schema import normalize_input_schema


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Catalog records
# ---------------------------------------------------------------------------

class Visibility(str, Enum):
    """Who may obtain tokens for a resource without a grant."""
    PUBLIC = "public"
    PRIVATE = "private"


class Resource(BaseModel):
    """
    An MCP: a tenant-owned, sluggable collection of tools.

    The slug is the issuer path segment and never changes after creation.
    """
    id: str = Field(default_factory=new_id)
    slug: str = Field(..., pattern=r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
    name: str
    enabled: bool = True
    visibility: Visibility = Visibility.PRIVATE
    owner_id: str


class HTTPMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"

    @property
    def has_body(self) -> bool:
        return self in (HTTPMethod.POST, HTTPMethod.PUT, HTTPMethod.PATCH)


class KeyValuePair(BaseModel):
    name: str
    value: str = ""


class DownstreamAPI(BaseModel):
    """Declarative HTTP call template, reusable by many tools."""
    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    method: HTTPMethod = HTTPMethod.GET
    url: str
    headers: list[KeyValuePair] = Field(default_factory=list)
    cookies: list[KeyValuePair] = Field(default_factory=list)
    url_params: list[KeyValuePair] = Field(default_factory=list)
    payload_schema: Optional[dict[str, Any]] = None


class TransformationType(str, Enum):
    DIRECT = "direct"
    CONSTANT = "constant"
    EXPRESSION = "expression"


class FieldMapping(BaseModel):
    """Rule producing one downstream payload field."""
    tool_field: Optional[str] = None
    api_field: str
    transformation: TransformationType = TransformationType.DIRECT
    value: Optional[str] = None
    expression: Optional[str] = None


class MappingConfig(BaseModel):
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    static_fields: Optional[dict[str, str]] = None


class ToolMapping(BaseModel):
    id: str = Field(default_factory=new_id)
    tool_id: str
    api_id: str
    mapping_config: MappingConfig = Field(default_factory=MappingConfig)


class CallableTool(BaseModel):
    """
    A tool owned by a resource.

    One record, two read-only protocol projections: the tool-listing entry and
    the resource-listing entry. Both are computed here so they cannot drift.
    """
    id: str = Field(default_factory=new_id)
    resource_id: str
    name: str
    description: Optional[str] = None
    input_schema: Any = Field(default_factory=dict)
    uri: str
    enabled: bool = True

    @property
    def normalized_schema(self) -> dict[str, Any]:
        return normalize_input_schema(self.input_schema).normalized

    def tool_entry(self) -> dict[str, Any]:
        """Projection used by ``tools/list``."""
        entry: dict[str, Any] = {"name": self.name}
        if self.description:
            entry["description"] = self.description
        entry["inputSchema"] = self.normalized_schema
        return entry

    def resource_entry(self) -> dict[str, Any]:
        """Projection used by ``resources/list``; carries the input schema as ``params``."""
        entry: dict[str, Any] = {"uri": self.uri, "name": self.name}
        if self.description:
            entry["description"] = self.description
        entry["mimeType"] = "application/json"
        entry["params"] = self.normalized_schema
        return entry


# ---------------------------------------------------------------------------
# Access control
# ---------------------------------------------------------------------------

class AccessGrant(BaseModel):
    id: str = Field(default_factory=new_id)
    resource_id: str
    user_id: str
    granted_by: str
    granted_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """A grant is valid iff unrevoked and either open-ended or not yet expired."""
        if self.revoked_at is not None:
            return False
        if self.expires_at is None:
            return True
        return self.expires_at > (now or utcnow())


class AccessDecision(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    is_owner: bool = False


class UserContext(BaseModel):
    """Authenticated end user taken from a login session."""
    user_id: str
    email: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id == ANONYMOUS_USER_ID


ANONYMOUS_USER_ID = "anonymous"


# ---------------------------------------------------------------------------
# OAuth records and wire shapes
# ---------------------------------------------------------------------------

class AuthorizationCode(BaseModel):
    code: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str = "S256"
    scope: str
    resource: str
    user_id: str
    resource_id: str
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
    used_at: Optional[datetime] = None


class TokenRecord(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scopes: list[str] = Field(default_factory=list)
    client_id: Optional[str] = None
    user_id: str
    resource_id: str
    expires_at: datetime
    refresh_expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: str


class TokenValidation(BaseModel):
    valid: bool
    claims: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.claims.get("sub") if self.claims else None


class IntrospectionResponse(BaseModel):
    """RFC 7662 response. Inactive responses carry only ``active``."""
    active: bool
    scope: Optional[str] = None
    client_id: Optional[str] = None
    sub: Optional[str] = None
    exp: Optional[int] = None
    aud: Optional[str] = None
    token_type: Optional[str] = None


class ClientRegistration(BaseModel):
    client_id: str
    client_id_issued_at: int
    client_name: str
    client_uri: Optional[str] = None
    logo_uri: Optional[str] = None
    redirect_uris: list[str]
    grant_types: list[str] = Field(default_factory=lambda: ["authorization_code"])
    response_types: list[str] = Field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = "none"


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------

class UsageRecord(BaseModel):
    """One tool invocation outcome. Append-only."""
    id: str = Field(default_factory=new_id)
    tool_id: Optional[str] = None
    resource_id: str
    tool_name: str
    request_arguments: Optional[dict[str, Any]] = None
    success: bool
    response_status: Optional[int] = None
    response_time_ms: float = 0
    api_id: Optional[str] = None
    error_message: Optional[str] = None
    client_ip: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# JSON-RPC 2.0
# ---------------------------------------------------------------------------

JSONRPCId = Union[str, int, None]


class JSONRPCError(BaseModel):
    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCResponse(BaseModel):
    jsonrpc: str = "2.0"
    id: JSONRPCId = None
    result: Optional[Any] = None
    error: Optional[JSONRPCError] = None

    def to_wire(self) -> dict[str, Any]:
        """Serialize with exactly one of ``result`` / ``error``."""
        body: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            body["error"] = self.error.model_dump(exclude_none=True)
        else:
            body["result"] = self.result if self.result is not None else {}
        return body
