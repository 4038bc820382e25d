"""Tool invocation pipeline.

Shared by ``tools/call`` and ``resources/read``: validate arguments,
transform them into a payload, call the downstream API, time the call and
record usage. Argument, transformation and downstream problems come back
as error content; they never abort the JSON-RPC exchange.
"""

import time
from enum import Enum
from typing import Any, Optional

from shared.errors import DownstreamError, TransformationError
from shared.logging import get_logger
from shared.models import CallableTool, UsageRecord
from mcp_server.api_client import DownstreamClient, DownstreamResponse
from mcp_server.registry import ResourceRegistry, ToolBinding
from mcp_server.transform import TransformationEngine
from mcp_server.usage import UsageRecorder

logger = get_logger(__name__)


class InvocationMode(str, Enum):
    TOOL = "tool"
    RESOURCE = "resource"


def text_result(text: str, is_error: bool = False) -> dict[str, Any]:
    """``tools/call`` result with a single text item."""
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


def resource_result(tool: CallableTool, text: str, is_error: bool = False) -> dict[str, Any]:
    """``resources/read`` result with a single contents entry."""
    result: dict[str, Any] = {
        "contents": [{"uri": tool.uri, "mimeType": "application/json", "text": text}],
    }
    if is_error:
        result["isError"] = True
    return result


class ToolInvoker:
    """
    Executes bound tools.

    Responsibilities:
    - Validate arguments against the tool's input schema
    - Transform arguments into the downstream payload
    - Call the downstream API
    - Record every outcome
    """

    def __init__(
        self,
        registry: ResourceRegistry,
        client: DownstreamClient,
        recorder: UsageRecorder,
        engine: Optional[TransformationEngine] = None,
    ) -> None:
        self.registry = registry
        self.client = client
        self.recorder = recorder
        self.engine = engine or TransformationEngine()

    def _result(self, mode: InvocationMode, tool: CallableTool, text: str, is_error: bool) -> dict[str, Any]:
        if mode == InvocationMode.RESOURCE:
            return resource_result(tool, text, is_error)
        return text_result(text, is_error)

    async def invoke(
        self,
        binding: ToolBinding,
        arguments: dict[str, Any],
        client_ip: Optional[str] = None,
        mode: InvocationMode = InvocationMode.TOOL,
    ) -> dict[str, Any]:
        """
        Run a configured tool and return the protocol result.

        Args:
            binding: Tool with its mapping and API; must be configured
            arguments: Call arguments
            client_ip: Caller address for usage records
            mode: Shape of the returned result
        """
        tool = binding.tool
        start_time = time.perf_counter()

        def finish(
            success: bool,
            status: Optional[int] = None,
            error: Optional[str] = None,
        ) -> None:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            self.recorder.record(UsageRecord(
                tool_id=tool.id,
                resource_id=tool.resource_id,
                tool_name=tool.name,
                request_arguments=arguments,
                success=success,
                response_status=status,
                response_time_ms=round(elapsed_ms, 2),
                api_id=binding.api.id if binding.api else None,
                error_message=error,
                client_ip=client_ip,
            ))
            logger.info(
                "Tool invoked",
                tool=tool.name,
                success=success,
                status=status,
                response_time_ms=round(elapsed_ms, 2),
            )

        is_valid, errors = self.registry.validate_input(tool, arguments)
        if not is_valid:
            message = f"Invalid arguments for tool \"{tool.name}\": {'; '.join(errors)}"
            finish(False, 400, message)
            return self._result(mode, tool, message, True)

        try:
            payload = self.engine.apply(arguments, binding.mapping.mapping_config)
            response: DownstreamResponse = await self.client.call(binding.api, payload)
        except TransformationError as e:
            finish(False, 400, e.message)
            return self._result(mode, tool, e.message, True)
        except DownstreamError as e:
            finish(False, e.status, e.message)
            return self._result(mode, tool, e.message, True)
        except Exception as e:
            logger.error("Tool execution failed", tool=tool.name, error=str(e), exc_info=True)
            message = f"Tool execution failed: {type(e).__name__}"
            finish(False, None, message)
            return self._result(mode, tool, message, True)

        finish(response.is_success, response.status, response.error_message())
        return self._result(mode, tool, response.to_text(), not response.is_success)
