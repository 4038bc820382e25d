"""Tests for MCP Server components."""

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from shared.errors import DownstreamError, NotFoundError
from shared.models import (
    CallableTool,
    DownstreamAPI,
    HTTPMethod,
    KeyValuePair,
    Resource,
    UsageRecord,
    Visibility,
)

CATALOG_PATH = Path(__file__).resolve().parent.parent / "config" / "catalog.yaml"


def usage_record(tool_name="get_user", **overrides):
    fields = {"success": True, **overrides}
    return UsageRecord(resource_id="res-pepe", tool_name=tool_name, **fields)


class TestResourceRegistry:
    """Tests for the ResourceRegistry."""

    def test_resolve_enabled_resource(self, registry):
        """Test resolving a slug to its resource."""
        resource = registry.resolve("pepe")
        assert resource.id == "res-pepe"

    def test_resolve_unknown_and_disabled(self, registry):
        """Test that unknown and disabled slugs are indistinguishable."""
        with pytest.raises(NotFoundError, match='"ghost"'):
            registry.resolve("ghost")
        with pytest.raises(NotFoundError, match='"off"'):
            registry.resolve("off")

    def test_disable_then_enable(self, registry):
        registry.set_enabled("res-pepe", False)
        with pytest.raises(NotFoundError):
            registry.resolve("pepe")

        registry.set_enabled("res-pepe", True)
        assert registry.resolve("pepe").enabled

    def test_duplicate_slug_raises(self, registry):
        """Test that registering a taken slug raises error."""
        with pytest.raises(ValueError, match="already registered"):
            registry.add_resource(Resource(slug="pepe", name="Again", owner_id="x"))

    def test_duplicate_tool_name_raises(self, registry):
        with pytest.raises(ValueError, match="already registered"):
            registry.add_tool(CallableTool(resource_id="res-pepe", name="get_user", uri="pepe://other"))

    def test_list_enabled_tools(self, registry):
        """Test that disabled tools are not listed."""
        tool = registry.get_tool("res-pepe", "flaky")
        registry.add_tool(CallableTool(resource_id="res-pepe", name="hidden", uri="pepe://hidden", enabled=False))

        names = [t.name for t in registry.list_enabled_tools("res-pepe")]
        assert "hidden" not in names
        assert tool.name in names
        assert registry.get_tool("res-pepe", "hidden") is None

    def test_get_binding(self, registry):
        binding = registry.get_binding("res-pepe", "get_user")

        assert binding.is_configured
        assert binding.api.id == "api-users"

        unmapped = registry.get_binding("res-pepe", "unmapped")
        assert not unmapped.is_configured
        assert unmapped.mapping is None

        assert registry.get_binding("res-open", "get_user") is None

    def test_get_tool_by_uri(self, registry):
        assert registry.get_tool_by_uri("res-pepe", "pepe://items").name == "create_item"
        assert registry.get_tool_by_uri("res-pepe", "pepe://nothing") is None

    def test_remove_resource_cascades(self, registry):
        assert registry.remove_resource("res-pepe")

        assert registry.list_enabled_tools("res-pepe") == []
        assert registry.get_resource("res-pepe") is None
        assert not registry.remove_resource("res-pepe")

        # slug becomes free again
        registry.add_resource(Resource(slug="pepe", name="New", owner_id="x"))


class TestInputValidation:
    """Tests for argument validation against tool schemas."""

    def test_valid_arguments(self, registry):
        tool = registry.get_tool("res-pepe", "get_user")
        assert registry.validate_input(tool, {"id": "42", "verbose": True}) == (True, [])

    def test_missing_required(self, registry):
        """Test that missing required fields are reported together with available ones."""
        tool = registry.get_tool("res-pepe", "get_user")
        ok, errors = registry.validate_input(tool, {"verbose": True})

        assert not ok
        assert errors[0].startswith("Missing required parameters: id")
        assert "Available parameters: id, verbose" in errors[0]

    def test_unknown_arguments(self, registry):
        tool = registry.get_tool("res-pepe", "get_user")
        ok, errors = registry.validate_input(tool, {"id": "1", "extra": 1})

        assert not ok
        assert "Unknown arguments: extra" in errors[0]

    def test_type_mismatch(self, registry):
        tool = registry.get_tool("res-pepe", "get_user")
        ok, errors = registry.validate_input(tool, {"id": 5})

        assert not ok
        assert errors[0].startswith("id:")

    def test_tool_without_parameters(self, registry):
        tool = registry.get_tool("res-pepe", "list_missing")

        assert registry.validate_input(tool, {}) == (True, [])
        ok, errors = registry.validate_input(tool, {"x": 1})
        assert not ok
        assert "does not accept parameters" in errors[0]


class TestSchemaNormalization:
    """Tests for input schema normalization."""

    def test_simplified_schema(self):
        from shared.schema import normalize_input_schema

        result = normalize_input_schema({"title": "Item title", "price": "Number"})

        assert result.valid
        assert result.normalized == {
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "Item title"},
                "price": {"type": "number", "description": "price parameter"},
            },
        }

    def test_missing_property_type_defaults_to_string(self):
        from shared.schema import normalize_input_schema

        result = normalize_input_schema({"properties": {"q": {"description": "query"}}})

        assert not result.valid
        assert result.normalized["type"] == "object"
        assert result.normalized["properties"]["q"]["type"] == "string"

    def test_required_must_be_listed(self):
        from shared.schema import normalize_input_schema

        result = normalize_input_schema({"type": "object", "properties": {}, "required": ["a"]})
        assert "Required fields not in properties: a" in result.errors

    def test_empty_and_invalid(self):
        from shared.schema import normalize_input_schema

        assert normalize_input_schema(None).normalized == {"type": "object", "properties": {}}
        assert normalize_input_schema({}).normalized == {"type": "object", "properties": {}}
        assert normalize_input_schema([1]).errors == ["Input schema must be an object"]

    def test_tool_projections_share_schema(self, registry):
        """Test that tools/list and resources/list agree on the schema."""
        tool = registry.get_tool("res-pepe", "create_item")

        assert tool.tool_entry()["inputSchema"] == tool.resource_entry()["params"]
        assert tool.resource_entry()["mimeType"] == "application/json"
        assert "description" not in tool.tool_entry()


class TestCatalogLoading:
    """Tests for seeding the registry from YAML."""

    def test_load_shipped_catalog(self):
        """Test that the bundled catalog loads cleanly."""
        from shared.config import load_yaml_config
        from oauth_server.access import AccessControl
        from mcp_server.registry import ResourceRegistry, load_catalog

        registry = ResourceRegistry()
        access = AccessControl()
        counts = load_catalog(load_yaml_config(CATALOG_PATH), registry, access)

        assert counts == {"resources": 2, "tools": 3, "apis": 3, "mappings": 3, "grants": 1}
        weather = registry.resolve("weather")
        assert weather.visibility == Visibility.PUBLIC
        assert registry.get_binding(weather.id, "get_forecast").is_configured

    @pytest.mark.asyncio
    async def test_catalog_grants_apply(self):
        from oauth_server.access import AccessControl
        from mcp_server.registry import ResourceRegistry, load_catalog

        registry = ResourceRegistry()
        access = AccessControl()
        load_catalog({
            "resources": [{
                "slug": "team",
                "name": "Team",
                "owner_id": "owner-1",
                "grants": [{"user_id": "user-2"}],
            }],
        }, registry, access)

        team = registry.resolve("team")
        assert await access.can_access(team, "user-2")
        assert not await access.can_access(team, "user-3")

    def test_unknown_api_reference(self):
        from mcp_server.registry import ResourceRegistry, load_catalog

        with pytest.raises(ValueError, match="unknown API"):
            load_catalog({
                "resources": [{
                    "slug": "x",
                    "name": "X",
                    "owner_id": "o",
                    "tools": [{"name": "t", "uri": "x://t", "mapping": {"api": "nope"}}],
                }],
            }, ResourceRegistry())

    def test_missing_yaml_file(self, tmp_path):
        from shared.config import load_yaml_config

        assert load_yaml_config(tmp_path / "absent.yaml") == {}


class TestDownstreamClient:
    """Tests for outbound request construction and execution."""

    def test_path_placeholder_is_quoted_and_consumed(self):
        """Test that URL placeholders are percent-encoded and removed from the payload."""
        from mcp_server.api_client import DownstreamClient

        client = DownstreamClient(httpx.AsyncClient())
        api = DownstreamAPI(name="users", url="https://api.example.com/users/{user_id}")

        request = client.build_request(api, {"user_id": "a b/c", "verbose": True})

        assert request.url.raw_path == b"/users/a%20b%2Fc?verbose=true"
        assert request.method == "GET"
        assert request.content == b""

    def test_body_methods_send_json(self):
        from mcp_server.api_client import DownstreamClient

        client = DownstreamClient(httpx.AsyncClient())
        api = DownstreamAPI(name="items", method=HTTPMethod.POST, url="https://api.example.com/items")

        request = client.build_request(api, {"name": "X", "tags": ["a"]})

        assert json.loads(request.content) == {"name": "X", "tags": ["a"]}
        assert request.headers["content-type"] == "application/json"
        assert request.url.query == b""

    def test_headers_cookies_and_url_params(self):
        """Test that headers, cookies and URL params are templated."""
        from mcp_server.api_client import DownstreamClient

        client = DownstreamClient(httpx.AsyncClient())
        api = DownstreamAPI(
            name="search",
            url="https://api.example.com/search",
            headers=[KeyValuePair(name="X-Tenant", value="{tenant}"), KeyValuePair(name="X-Empty", value="")],
            cookies=[KeyValuePair(name="session", value="abc"), KeyValuePair(name="lang", value="en")],
            url_params=[KeyValuePair(name="format", value="json")],
        )

        request = client.build_request(api, {"tenant": "acme", "q": "shoes"})

        assert request.headers["x-tenant"] == "acme"
        assert "x-empty" not in request.headers
        assert request.headers["cookie"] == "session=abc; lang=en"
        assert dict(request.url.params) == {"format": "json", "q": "shoes"}

    @pytest.mark.asyncio
    async def test_call_maps_response(self):
        from mcp_server.api_client import DownstreamClient

        def handler(request):
            return httpx.Response(404, json={"message": "gone"})

        client = DownstreamClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        response = await client.call(DownstreamAPI(name="x", url="https://api.example.com/x"), {})

        assert not response.is_success
        assert response.error_message() == "gone"
        body = json.loads(response.to_text())
        assert body["status"] == 404
        assert body["statusText"] == "Not Found"
        assert body["data"] == {"message": "gone"}
        await client.close()

    @pytest.mark.asyncio
    async def test_timeout_becomes_downstream_error(self):
        """Test that timeouts surface as DownstreamError."""
        from mcp_server.api_client import DownstreamClient

        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = DownstreamClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), timeout=2.0)

        with pytest.raises(DownstreamError, match="timed out after 2.0s"):
            await client.call(DownstreamAPI(name="slow", url="https://api.example.com/slow"), {})
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method,payload",
        [
            (HTTPMethod.POST, {"n": 10 ** 5000}),
            (HTTPMethod.POST, {"n": object()}),
            (HTTPMethod.GET, {"n": 10 ** 5000}),
        ],
    )
    async def test_unserializable_payload_becomes_downstream_error(self, method, payload):
        """Test that a payload that cannot be encoded fails as DownstreamError."""
        from mcp_server.api_client import DownstreamClient

        sent = []
        client = DownstreamClient(httpx.AsyncClient(transport=httpx.MockTransport(sent.append)))
        api = DownstreamAPI(name="items", method=method, url="https://api.example.com/items")

        with pytest.raises(DownstreamError, match="Failed to build API request for items"):
            await client.call(api, payload)
        assert sent == []
        await client.close()

    def test_error_message_fallback(self):
        from mcp_server.api_client import DownstreamResponse

        assert DownstreamResponse(status=500, data="boom").error_message() == "HTTP 500"
        assert DownstreamResponse(status=200).error_message() is None


class TestUsageRecorder:
    """Tests for the background usage recorder."""

    def test_redaction(self):
        """Test that sensitive values are redacted, including nested ones."""
        from mcp_server.usage import redact_sensitive

        redacted = redact_sensitive({"q": "x", "API_KEY": "k", "auth": {"password": "p", "user": "u"}})

        assert redacted == {"q": "x", "API_KEY": "[REDACTED]", "auth": {"password": "[REDACTED]", "user": "u"}}

    @pytest.mark.asyncio
    async def test_records_reach_sink(self):
        from mcp_server.usage import MemorySink, UsageRecorder

        sink = MemorySink()
        recorder = UsageRecorder(sink)
        recorder.start()

        recorder.record(usage_record(request_arguments={"token": "t", "id": "1"}))
        await recorder.flush()

        assert sink.records[0].request_arguments == {"token": "[REDACTED]", "id": "1"}
        await recorder.stop()
        assert not recorder.running

    @pytest.mark.asyncio
    async def test_queue_full_drops(self):
        """Test that a full queue drops records instead of blocking."""
        from mcp_server.usage import MemorySink, UsageRecorder

        recorder = UsageRecorder(MemorySink(), queue_size=1)

        recorder.record(usage_record())
        recorder.record(usage_record())

        assert recorder.dropped == 1

    @pytest.mark.asyncio
    async def test_sink_failure_is_swallowed(self):
        """Test that a failing sink does not stop the worker."""
        from mcp_server.usage import MemorySink, UsageRecorder

        class FlakySink(MemorySink):
            def __init__(self):
                super().__init__()
                self.calls = 0

            async def write(self, record):
                self.calls += 1
                if self.calls == 1:
                    raise OSError("disk full")
                await super().write(record)

        sink = FlakySink()
        recorder = UsageRecorder(sink)
        recorder.start()

        recorder.record(usage_record("first"))
        recorder.record(usage_record("second"))
        await recorder.flush()

        assert recorder.running
        assert [r.tool_name for r in sink.records] == ["second"]
        await recorder.stop()

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self):
        from mcp_server.usage import MemorySink, UsageRecorder

        sink = MemorySink()
        recorder = UsageRecorder(sink)
        recorder.start()
        for i in range(5):
            recorder.record(usage_record(f"tool-{i}"))

        await recorder.stop()

        assert len(sink.records) == 5

    @pytest.mark.asyncio
    async def test_disabled_recorder_ignores_records(self):
        from mcp_server.usage import MemorySink, UsageRecorder

        sink = MemorySink()
        recorder = UsageRecorder(sink, enabled=False)
        recorder.start()
        recorder.record(usage_record())
        await asyncio.sleep(0)
        await recorder.stop()

        assert sink.records == []

    @pytest.mark.asyncio
    async def test_jsonl_sink_round_trip(self, tmp_path):
        """Test writing and querying the JSON lines sink."""
        from mcp_server.usage import JSONLinesSink

        sink = JSONLinesSink(str(tmp_path / "usage" / "usage.log"))
        await sink.write(usage_record("a"))
        await sink.write(usage_record("b", success=False))

        failures = await sink.query(success=False)
        assert [r.tool_name for r in failures] == ["b"]
        assert len(await sink.query(resource_id="res-pepe")) == 2


class TestToolInvoker:
    """Tests for the invocation pipeline outside HTTP."""

    @pytest.mark.asyncio
    async def test_invoke_records_failure_for_bad_arguments(self, registry, http_client):
        from mcp_server.api_client import DownstreamClient
        from mcp_server.router import ToolInvoker
        from mcp_server.usage import MemorySink, UsageRecorder

        sink = MemorySink()
        recorder = UsageRecorder(sink)
        recorder.start()
        invoker = ToolInvoker(registry, DownstreamClient(http_client), recorder)

        result = await invoker.invoke(registry.get_binding("res-pepe", "get_user"), {}, "10.0.0.1")
        await recorder.stop()

        assert result["isError"] is True
        assert 'Invalid arguments for tool "get_user"' in result["content"][0]["text"]
        assert sink.records[0].success is False
        assert sink.records[0].response_status == 400
        assert sink.records[0].client_ip == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_resource_mode_result(self, registry, http_client, downstream_requests):
        from mcp_server.api_client import DownstreamClient
        from mcp_server.router import InvocationMode, ToolInvoker
        from mcp_server.usage import MemorySink, UsageRecorder

        invoker = ToolInvoker(registry, DownstreamClient(http_client), UsageRecorder(MemorySink()))

        result = await invoker.invoke(
            registry.get_binding("res-pepe", "get_user"), {"id": "7"}, mode=InvocationMode.RESOURCE,
        )

        content = result["contents"][0]
        assert content["uri"] == "pepe://users"
        assert json.loads(content["text"])["data"] == {"id": "7", "name": "Ada"}
        assert "isError" not in result
        assert downstream_requests[0].headers["x-api-key"] == "k-123"

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_recorded_as_tool_error(self, registry, http_client, monkeypatch):
        """Test that an unexpected exception becomes an isError result with a usage record."""
        from mcp_server.api_client import DownstreamClient
        from mcp_server.router import ToolInvoker
        from mcp_server.usage import MemorySink, UsageRecorder

        async def broken_call(api, payload):
            raise RuntimeError("connection pool exploded")

        client = DownstreamClient(http_client)
        monkeypatch.setattr(client, "call", broken_call)
        sink = MemorySink()
        recorder = UsageRecorder(sink)
        recorder.start()
        invoker = ToolInvoker(registry, client, recorder)

        result = await invoker.invoke(registry.get_binding("res-pepe", "get_user"), {"id": "7"})
        await recorder.stop()

        assert result["isError"] is True
        assert result["content"][0]["text"] == "Tool execution failed: RuntimeError"
        assert len(sink.records) == 1
        assert sink.records[0].success is False
        assert sink.records[0].error_message == "Tool execution failed: RuntimeError"


class TestLogging:
    """Tests for the structlog processors."""

    def test_redacts_credentials(self):
        """Test that credential values are masked at the top level and one level down."""
        from shared.logging import REDACTED, redact_secrets

        event = redact_secrets(None, "info", {
            "event": "Request received",
            "Authorization": "Bearer abc",
            "refresh_token": "r-1",
            "headers": {"cookie": "mcp_session=s", "accept": "application/json"},
            "slug": "pepe",
        })

        assert event["Authorization"] == REDACTED
        assert event["refresh_token"] == REDACTED
        assert event["headers"] == {"cookie": REDACTED, "accept": "application/json"}
        assert event["slug"] == "pepe"
        assert event["event"] == "Request received"
