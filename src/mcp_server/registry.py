"""Resource Registry for the MCP gateway.

Holds resources (MCPs), their tools, downstream API definitions and the
tool-to-API mappings. Lookups used on the request path treat unknown and
disabled records the same way: as not found.

The admin surface that creates these records is an external collaborator;
``add_*`` and ``load_catalog`` are the interface it (or a YAML seed) uses.
"""

from typing import TYPE_CHECKING, Any, NamedTuple, Optional

from shared.errors import NotFoundError
from shared.logging import get_logger
from shared.models import (
    AccessGrant,
    CallableTool,
    DownstreamAPI,
    Resource,
    ToolMapping,
)
from shared.schema import validate_schema

if TYPE_CHECKING:
    from oauth_server.access import AccessControl

logger = get_logger(__name__)


class ToolBinding(NamedTuple):
    """A tool with the mapping and API consulted when it is invoked."""
    tool: CallableTool
    mapping: Optional[ToolMapping]
    api: Optional[DownstreamAPI]

    @property
    def is_configured(self) -> bool:
        return self.mapping is not None and self.api is not None


class ResourceRegistry:
    """
    Registry of MCP resources and everything they own.

    Responsibilities:
    - Resolve slugs to enabled resources
    - Enumerate enabled tools per resource
    - Resolve a tool to its mapping and downstream API
    - Validate tool arguments against the tool's input schema
    """

    def __init__(self) -> None:
        self._resources: dict[str, Resource] = {}
        self._slugs: dict[str, str] = {}
        self._tools: dict[str, CallableTool] = {}
        self._apis: dict[str, DownstreamAPI] = {}
        self._mappings: dict[str, ToolMapping] = {}

    # -- registration -------------------------------------------------------

    def add_resource(self, resource: Resource) -> Resource:
        """
        Register a resource.

        Raises:
            ValueError: If the slug is already taken
        """
        if resource.slug in self._slugs:
            raise ValueError(f"Resource slug '{resource.slug}' is already registered")

        self._resources[resource.id] = resource
        self._slugs[resource.slug] = resource.id
        logger.info("Resource registered", slug=resource.slug, visibility=resource.visibility.value)
        return resource

    def set_enabled(self, resource_id: str, enabled: bool) -> None:
        resource = self._resources.get(resource_id)
        if resource is None:
            raise NotFoundError(f"Resource '{resource_id}' not found")
        self._resources[resource_id] = resource.model_copy(update={"enabled": enabled})

    def remove_resource(self, resource_id: str) -> bool:
        """Remove a resource and cascade to its tools and their mappings."""
        resource = self._resources.pop(resource_id, None)
        if resource is None:
            return False

        del self._slugs[resource.slug]
        for tool_id in [t.id for t in self._tools.values() if t.resource_id == resource_id]:
            del self._tools[tool_id]
            self._mappings.pop(tool_id, None)

        logger.info("Resource removed", slug=resource.slug)
        return True

    def add_tool(self, tool: CallableTool) -> CallableTool:
        if tool.resource_id not in self._resources:
            raise ValueError(f"Resource '{tool.resource_id}' does not exist")
        if any(t.resource_id == tool.resource_id and t.name == tool.name for t in self._tools.values()):
            raise ValueError(f"Tool '{tool.name}' is already registered for this resource")

        self._tools[tool.id] = tool
        logger.debug("Tool registered", tool=tool.name, resource_id=tool.resource_id)
        return tool

    def add_api(self, api: DownstreamAPI) -> DownstreamAPI:
        self._apis[api.id] = api
        return api

    def add_mapping(self, mapping: ToolMapping) -> ToolMapping:
        """Bind a tool to an API. A later mapping for the same tool replaces the earlier one."""
        if mapping.tool_id not in self._tools:
            raise ValueError(f"Tool '{mapping.tool_id}' does not exist")
        if mapping.api_id not in self._apis:
            raise ValueError(f"API '{mapping.api_id}' does not exist")

        self._mappings[mapping.tool_id] = mapping
        return mapping

    # -- lookups ------------------------------------------------------------

    def resolve(self, slug: str) -> Resource:
        """
        Resolve a slug to its resource.

        Raises:
            NotFoundError: If the slug is unknown or the resource is disabled
        """
        resource_id = self._slugs.get(slug)
        resource = self._resources.get(resource_id) if resource_id else None
        if resource is None or not resource.enabled:
            raise NotFoundError(f'MCP with slug "{slug}" not found')
        return resource

    def get_resource(self, resource_id: str) -> Optional[Resource]:
        return self._resources.get(resource_id)

    def list_resources(self) -> list[Resource]:
        return list(self._resources.values())

    def list_enabled_tools(self, resource_id: str) -> list[CallableTool]:
        return [
            t for t in self._tools.values()
            if t.resource_id == resource_id and t.enabled
        ]

    def get_tool(self, resource_id: str, name: str) -> Optional[CallableTool]:
        for tool in self.list_enabled_tools(resource_id):
            if tool.name == name:
                return tool
        return None

    def get_tool_by_uri(self, resource_id: str, uri: str) -> Optional[CallableTool]:
        for tool in self.list_enabled_tools(resource_id):
            if tool.uri == uri:
                return tool
        return None

    def bind(self, tool: CallableTool) -> ToolBinding:
        """Resolve the mapping and API for a tool. Either may be missing."""
        mapping = self._mappings.get(tool.id)
        api = self._apis.get(mapping.api_id) if mapping else None
        return ToolBinding(tool=tool, mapping=mapping if api else None, api=api)

    def get_binding(self, resource_id: str, tool_name: str) -> Optional[ToolBinding]:
        tool = self.get_tool(resource_id, tool_name)
        return self.bind(tool) if tool else None

    # -- validation ---------------------------------------------------------

    def validate_input(self, tool: CallableTool, arguments: dict[str, Any]) -> tuple[bool, list[str]]:
        """
        Validate call arguments against the tool's normalized input schema.

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        schema = tool.normalized_schema
        properties = schema.get("properties") or {}

        if not properties:
            if arguments:
                return False, [
                    f'Tool "{tool.name}" does not accept parameters; '
                    f"received: {', '.join(sorted(arguments))}"
                ]
            return True, []

        errors: list[str] = []
        missing = [f for f in schema.get("required") or [] if f not in arguments]
        if missing:
            errors.append(
                f"Missing required parameters: {', '.join(missing)}. "
                f"Available parameters: {', '.join(properties)}"
            )

        unknown = [a for a in arguments if a not in properties]
        if unknown:
            errors.append(
                f"Unknown arguments: {', '.join(unknown)}. Expected: {', '.join(properties)}"
            )

        if errors:
            return False, errors

        return validate_schema(arguments, schema)


def load_catalog(
    data: dict[str, Any],
    registry: ResourceRegistry,
    access_control: Optional["AccessControl"] = None,
) -> dict[str, int]:
    """
    Seed the registry (and grants) from a catalog mapping, typically YAML.

    APIs are referenced from tool mappings by name. Returns counts per record kind.
    """
    counts = {"resources": 0, "tools": 0, "apis": 0, "mappings": 0, "grants": 0}
    apis_by_name: dict[str, DownstreamAPI] = {}

    for api_data in data.get("apis") or []:
        api = registry.add_api(DownstreamAPI(**api_data))
        apis_by_name[api.name] = api
        counts["apis"] += 1

    for resource_data in data.get("resources") or []:
        resource_data = dict(resource_data)
        tools = resource_data.pop("tools", None) or []
        grants = resource_data.pop("grants", None) or []
        resource = registry.add_resource(Resource(**resource_data))
        counts["resources"] += 1

        for tool_data in tools:
            tool_data = dict(tool_data)
            mapping_data = tool_data.pop("mapping", None)
            tool = registry.add_tool(CallableTool(resource_id=resource.id, **tool_data))
            counts["tools"] += 1

            if mapping_data:
                mapping_data = dict(mapping_data)
                api_name = mapping_data.pop("api")
                api = apis_by_name.get(api_name)
                if api is None:
                    raise ValueError(f"Tool '{tool.name}' references unknown API '{api_name}'")
                registry.add_mapping(ToolMapping(tool_id=tool.id, api_id=api.id, mapping_config=mapping_data))
                counts["mappings"] += 1

        if access_control is not None:
            for grant_data in grants:
                access_control.add_grant(AccessGrant(
                    resource_id=resource.id,
                    granted_by=grant_data.get("granted_by", resource.owner_id),
                    **{k: v for k, v in grant_data.items() if k != "granted_by"},
                ))
                counts["grants"] += 1

    logger.info("Catalog loaded", **counts)
    return counts
