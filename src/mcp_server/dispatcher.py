"""Protocol Dispatcher: the JSON-RPC 2.0 loop of the MCP gateway.

One HTTP request carries one JSON-RPC message. The dispatcher resolves the
resource, authenticates the bearer token, validates the envelope and routes
the method. Protocol faults become JSON-RPC errors; tool-level failures are
returned as results with ``isError`` set.
"""

import json
from typing import Any, Awaitable, Callable, NamedTuple, Optional

from fastapi.security import HTTPAuthorizationCredentials

from shared.config import GatewaySettings
from shared.errors import NotFoundError
from shared.logging import bind_context, get_logger
from shared.models import JSONRPCError, JSONRPCId, JSONRPCResponse, Resource
from mcp_server.auth import GatewayAuthenticator
from mcp_server.registry import ResourceRegistry, ToolBinding
from mcp_server.router import InvocationMode, ToolInvoker, resource_result

logger = get_logger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
UNAUTHORIZED = -32001


class JSONRPCFault(Exception):
    """A protocol-level failure answered with a JSON-RPC error object."""

    def __init__(
        self,
        code: int,
        message: str,
        http_status: int = 200,
        data: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.data = data
        self.headers = headers or {}


class DispatchResult(NamedTuple):
    status_code: int
    body: Optional[dict[str, Any]] = None
    headers: dict[str, str] = {}


class RequestContext(NamedTuple):
    resource: Resource
    params: dict[str, Any]
    client_ip: Optional[str]


Handler = Callable[[RequestContext], Awaitable[dict[str, Any]]]


def _request_id(message: Any) -> JSONRPCId:
    if isinstance(message, dict):
        value = message.get("id")
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            return value
    return None


class ProtocolDispatcher:
    """Routes JSON-RPC methods for one resource per request."""

    def __init__(
        self,
        registry: ResourceRegistry,
        authenticator: GatewayAuthenticator,
        invoker: ToolInvoker,
        settings: GatewaySettings,
    ) -> None:
        self.registry = registry
        self.authenticator = authenticator
        self.invoker = invoker
        self.settings = settings
        self._methods: dict[str, Handler] = {
            "initialize": self._initialize,
            "ping": self._ping,
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
            "resources/list": self._resources_list,
            "resources/read": self._resources_read,
            "prompts/list": self._prompts_list,
        }

    # -- entry point --------------------------------------------------------

    async def handle(
        self,
        slug: str,
        raw_body: bytes,
        credentials: Optional[HTTPAuthorizationCredentials],
        client_ip: Optional[str] = None,
    ) -> DispatchResult:
        """Process one HTTP request body addressed to ``/api/mcp/{slug}``."""
        bind_context(slug=slug)

        try:
            message: Any = json.loads(raw_body)
            parse_failed = False
        except (json.JSONDecodeError, UnicodeDecodeError):
            message, parse_failed = None, True

        request_id = _request_id(message)

        try:
            resource = self.registry.resolve(slug)
        except NotFoundError as e:
            return self._error(request_id, JSONRPCFault(METHOD_NOT_FOUND, e.message, 404))

        validation = await self.authenticator.authenticate(resource, credentials)
        if not validation.valid:
            return self._error(request_id, JSONRPCFault(
                UNAUTHORIZED,
                "Unauthorized: a valid bearer token for this MCP is required",
                401,
                headers=self.authenticator.challenge_headers(slug),
            ))

        if parse_failed:
            return self._error(None, JSONRPCFault(PARSE_ERROR, "Parse error: body is not valid JSON", 400))

        try:
            return await self._dispatch(resource, message, client_ip)
        except JSONRPCFault as fault:
            return self._error(request_id, fault)
        except Exception:
            logger.error("Unhandled error while dispatching", exc_info=True)
            return self._error(request_id, JSONRPCFault(INTERNAL_ERROR, "Internal error", 500))

    async def _dispatch(self, resource: Resource, message: Any, client_ip: Optional[str]) -> DispatchResult:
        if isinstance(message, list):
            raise JSONRPCFault(INVALID_REQUEST, "Invalid Request: batch requests are not supported", 400)
        if not isinstance(message, dict) or message.get("jsonrpc") != "2.0":
            raise JSONRPCFault(INVALID_REQUEST, 'Invalid Request: jsonrpc must be "2.0"', 400)

        method = message.get("method")
        if not isinstance(method, str) or not method:
            raise JSONRPCFault(INVALID_REQUEST, "Invalid Request: method must be a string", 400)

        raw_id = message.get("id")
        if raw_id is not None and (isinstance(raw_id, bool) or not isinstance(raw_id, (str, int))):
            raise JSONRPCFault(INVALID_REQUEST, "Invalid Request: id must be a string or number", 400)

        if raw_id is None:
            logger.debug("Notification accepted", method=method)
            return DispatchResult(202)

        handler = self._methods.get(method)
        if handler is None:
            raise JSONRPCFault(METHOD_NOT_FOUND, f"Method not found: {method}")

        params = message.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise JSONRPCFault(INVALID_PARAMS, "Invalid params: params must be an object", 400)

        bind_context(method=method)
        result = await handler(RequestContext(resource, params, client_ip))
        return DispatchResult(200, JSONRPCResponse(id=raw_id, result=result).to_wire())

    @staticmethod
    def _error(request_id: JSONRPCId, fault: JSONRPCFault) -> DispatchResult:
        error = JSONRPCError(code=fault.code, message=fault.message, data=fault.data)
        body = JSONRPCResponse(id=request_id, error=error).to_wire()
        return DispatchResult(fault.http_status, body, fault.headers)

    # -- methods ------------------------------------------------------------

    async def _initialize(self, ctx: RequestContext) -> dict[str, Any]:
        requested = ctx.params.get("protocolVersion")
        if requested in self.settings.supported_protocol_versions:
            protocol_version = requested
        else:
            protocol_version = self.settings.protocol_version

        capabilities: dict[str, Any] = {}
        if self.registry.list_enabled_tools(ctx.resource.id):
            capabilities["tools"] = {"listChanged": True}
            capabilities["resources"] = {"subscribe": False, "listChanged": True}
        capabilities["prompts"] = {"listChanged": False}

        return {
            "protocolVersion": protocol_version,
            "capabilities": capabilities,
            "serverInfo": {"name": ctx.resource.name, "version": self.settings.server_version},
        }

    async def _ping(self, ctx: RequestContext) -> dict[str, Any]:
        return {}

    async def _tools_list(self, ctx: RequestContext) -> dict[str, Any]:
        tools = self.registry.list_enabled_tools(ctx.resource.id)
        return {"tools": [tool.tool_entry() for tool in tools]}

    async def _resources_list(self, ctx: RequestContext) -> dict[str, Any]:
        tools = self.registry.list_enabled_tools(ctx.resource.id)
        return {"resources": [tool.resource_entry() for tool in tools]}

    async def _prompts_list(self, ctx: RequestContext) -> dict[str, Any]:
        return {"prompts": []}

    def _require_configured(self, binding: ToolBinding, label: str) -> None:
        if not binding.is_configured:
            tool = binding.tool
            raise JSONRPCFault(
                INTERNAL_ERROR,
                f"{label} has no API mapping configured",
                400,
                data={"toolId": tool.id, "toolName": tool.name, "inputSchema": tool.normalized_schema},
            )

    async def _tools_call(self, ctx: RequestContext) -> dict[str, Any]:
        name = ctx.params.get("name")
        if not isinstance(name, str) or not name:
            raise JSONRPCFault(INVALID_PARAMS, "Invalid params: tool name is required", 400)

        arguments = ctx.params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise JSONRPCFault(INVALID_PARAMS, "Invalid params: arguments must be an object", 400)

        binding = self.registry.get_binding(ctx.resource.id, name)
        if binding is None:
            raise JSONRPCFault(METHOD_NOT_FOUND, f'Tool "{name}" not found', 404)
        self._require_configured(binding, f'Tool "{name}"')

        return await self.invoker.invoke(binding, arguments, ctx.client_ip, InvocationMode.TOOL)

    async def _resources_read(self, ctx: RequestContext) -> dict[str, Any]:
        uri = ctx.params.get("uri")
        if not isinstance(uri, str) or not uri:
            raise JSONRPCFault(INVALID_PARAMS, "Invalid params: resource URI is required", 400)

        tool = self.registry.get_tool_by_uri(ctx.resource.id, uri)
        if tool is None:
            raise JSONRPCFault(METHOD_NOT_FOUND, f'Resource with URI "{uri}" not found', 404)

        params = ctx.params.get("params")
        if params is None:
            return resource_result(tool, tool.description or tool.name)
        if not isinstance(params, dict):
            raise JSONRPCFault(INVALID_PARAMS, "Invalid params: params must be an object", 400)

        binding = self.registry.bind(tool)
        self._require_configured(binding, f'Resource "{uri}"')

        return await self.invoker.invoke(binding, params, ctx.client_ip, InvocationMode.RESOURCE)
