"""Shared models, configuration, logging and errors for the MCP OAuth gateway."""

from shared.models import (
    AccessGrant,
    CallableTool,
    DownstreamAPI,
    MappingConfig,
    Resource,
    ToolMapping,
    UsageRecord,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "AccessGrant",
    "CallableTool",
    "DownstreamAPI",
    "MappingConfig",
    "Resource",
    "ToolMapping",
    "UsageRecord",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
