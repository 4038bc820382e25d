"""MCP gateway - resource registry, JSON-RPC dispatch and tool execution.

Each MCP is served at ``/api/mcp/{slug}``. Tool calls are validated,
transformed through the tool's field mappings, proxied to the bound
downstream API and recorded.
"""

from mcp_server.registry import ResourceRegistry
from mcp_server.router import ToolInvoker
from mcp_server.dispatcher import ProtocolDispatcher
from mcp_server.transform import TransformationEngine
from mcp_server.usage import UsageRecorder

__all__ = [
    "ResourceRegistry",
    "ToolInvoker",
    "ProtocolDispatcher",
    "TransformationEngine",
    "UsageRecorder",
]
