"""Shared fixtures: a small catalog, a mocked downstream API and the app."""

import json
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi.testclient import TestClient

from shared.config import GatewaySettings, OAuthSettings, Settings, UsageSettings
from shared.models import (
    CallableTool,
    DownstreamAPI,
    FieldMapping,
    HTTPMethod,
    KeyValuePair,
    MappingConfig,
    Resource,
    ToolMapping,
    TransformationType,
    UserContext,
    Visibility,
)

BASE_URL = "https://gateway.example.com"
OWNER_ID = "owner-1"
REDIRECT_URI = "http://localhost:3333/callback"


@pytest.fixture
def settings():
    return Settings(
        gateway=GatewaySettings(base_url=BASE_URL + "/"),
        oauth=OAuthSettings(jwt_secret="test-secret"),
        usage=UsageSettings(enabled=True, shutdown_timeout_seconds=1.0),
    )


@pytest.fixture
def access_control():
    from oauth_server.access import AccessControl
    return AccessControl()


@pytest.fixture
def registry():
    """Catalog with a private, a public and a disabled MCP."""
    from mcp_server.registry import ResourceRegistry

    registry = ResourceRegistry()

    pepe = registry.add_resource(Resource(id="res-pepe", slug="pepe", name="Pepe", owner_id=OWNER_ID))
    registry.add_resource(Resource(
        id="res-open", slug="open", name="Open", owner_id=OWNER_ID, visibility=Visibility.PUBLIC,
    ))
    registry.add_resource(Resource(
        id="res-off", slug="off", name="Off", owner_id=OWNER_ID, enabled=False,
    ))

    users_api = registry.add_api(DownstreamAPI(
        id="api-users",
        name="users",
        method=HTTPMethod.GET,
        url="https://api.example.com/users/{user_id}",
        headers=[KeyValuePair(name="X-Api-Key", value="k-123")],
        cookies=[KeyValuePair(name="tenant", value="acme")],
    ))
    items_api = registry.add_api(DownstreamAPI(
        id="api-items", name="items", method=HTTPMethod.POST, url="https://api.example.com/items",
    ))
    missing_api = registry.add_api(DownstreamAPI(
        id="api-missing", name="missing", method=HTTPMethod.GET, url="https://api.example.com/missing",
    ))
    down_api = registry.add_api(DownstreamAPI(
        id="api-down", name="down", method=HTTPMethod.GET, url="https://down.example.com/",
    ))

    get_user = registry.add_tool(CallableTool(
        id="tool-get-user",
        resource_id=pepe.id,
        name="get_user",
        description="Fetch a user",
        uri="pepe://users",
        input_schema={
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "verbose": {"type": "boolean"},
            },
            "required": ["id"],
        },
    ))
    registry.add_mapping(ToolMapping(tool_id=get_user.id, api_id=users_api.id, mapping_config=MappingConfig(
        field_mappings=[
            FieldMapping(tool_field="id", api_field="user_id"),
            FieldMapping(tool_field="verbose", api_field="verbose"),
        ],
    )))

    create_item = registry.add_tool(CallableTool(
        id="tool-create-item",
        resource_id=pepe.id,
        name="create_item",
        uri="pepe://items",
        input_schema={"title": "Item title", "price": "number"},
    ))
    registry.add_mapping(ToolMapping(tool_id=create_item.id, api_id=items_api.id, mapping_config=MappingConfig(
        field_mappings=[
            FieldMapping(
                tool_field="title",
                api_field="name",
                transformation=TransformationType.EXPRESSION,
                expression="value.toUpperCase()",
            ),
            FieldMapping(
                tool_field="price",
                api_field="cents",
                transformation=TransformationType.EXPRESSION,
                expression="int(value * 100)",
            ),
        ],
        static_fields={"source": "mcp"},
    )))

    no_args = registry.add_tool(CallableTool(
        id="tool-no-args", resource_id=pepe.id, name="list_missing", uri="pepe://missing",
    ))
    registry.add_mapping(ToolMapping(tool_id=no_args.id, api_id=missing_api.id))

    flaky = registry.add_tool(CallableTool(
        id="tool-flaky", resource_id=pepe.id, name="flaky", uri="pepe://flaky",
    ))
    registry.add_mapping(ToolMapping(tool_id=flaky.id, api_id=down_api.id))

    registry.add_tool(CallableTool(
        id="tool-unmapped", resource_id=pepe.id, name="unmapped", uri="pepe://unmapped",
    ))

    return registry


@pytest.fixture
def downstream_requests():
    return []


@pytest.fixture
def http_client(downstream_requests):
    """httpx client whose transport plays the downstream APIs."""

    def handler(request: httpx.Request) -> httpx.Response:
        downstream_requests.append(request)
        if request.url.host == "down.example.com":
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.path.startswith("/users/"):
            return httpx.Response(200, json={"id": request.url.path.rsplit("/", 1)[-1], "name": "Ada"})
        if request.url.path == "/items":
            return httpx.Response(201, json=json.loads(request.content))
        if request.url.path == "/missing":
            return httpx.Response(404, json={"message": "no such thing"})
        return httpx.Response(200, text="ok")

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def usage_sink():
    from mcp_server.usage import MemorySink
    return MemorySink()


@pytest.fixture
def app(settings, registry, access_control, http_client, usage_sink):
    from mcp_server.main import create_app
    return create_app(
        settings=settings,
        registry=registry,
        access_control=access_control,
        http_client=http_client,
        usage_sink=usage_sink,
    )


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def session_for(app):
    """Build a login session token for a user id."""

    def make(user_id: str) -> str:
        return app.state.sessions.create_session_token(UserContext(user_id=user_id))

    return make


def obtain_tokens(client: TestClient, slug: str, session_token=None, scope=None) -> dict:
    """Run authorize + token exchange and return the token response body."""
    from oauth_server.pkce import generate_pkce

    verifier, challenge = generate_pkce()
    params = {
        "response_type": "code",
        "client_id": "test-client",
        "redirect_uri": REDIRECT_URI,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "state": "xyz",
    }
    if scope:
        params["scope"] = scope
    headers = {"Authorization": f"Bearer {session_token}"} if session_token else {}

    response = client.get(f"/api/oauth/{slug}/authorize", params=params, headers=headers, follow_redirects=False)
    assert response.status_code == 302, response.text
    code = parse_qs(urlsplit(response.headers["location"]).query)["code"][0]

    response = client.post(f"/api/oauth/{slug}/token", data={
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": REDIRECT_URI,
        "client_id": "test-client",
        "code_verifier": verifier,
    })
    assert response.status_code == 200, response.text
    return response.json()
