"""Transformation Engine.

Turns tool-call arguments into a downstream API payload by applying a
tool's field mappings in declaration order, then its static fields.
"""

import copy
from typing import Any

from shared.errors import TransformationError
from shared.logging import get_logger
from shared.models import FieldMapping, MappingConfig, TransformationType
from mcp_server.expressions import ExpressionError, evaluate_expression

logger = get_logger(__name__)


class TransformationEngine:
    """Applies mapping configurations. Stateless; inputs are never mutated."""

    def apply(self, tool_args: dict[str, Any], mapping_config: MappingConfig) -> dict[str, Any]:
        """
        Build the downstream payload.

        Args:
            tool_args: Arguments from the tool call
            mapping_config: Field mappings and static fields

        Returns:
            New payload dict

        Raises:
            TransformationError: If an expression fails; names the API field
        """
        args = copy.deepcopy(tool_args)
        payload: dict[str, Any] = {}

        for mapping in mapping_config.field_mappings:
            if not mapping.api_field:
                continue
            self._apply_one(mapping, args, payload)

        if mapping_config.static_fields:
            payload.update(mapping_config.static_fields)

        return payload

    def _apply_one(self, mapping: FieldMapping, args: dict[str, Any], payload: dict[str, Any]) -> None:
        if mapping.transformation == TransformationType.CONSTANT:
            payload[mapping.api_field] = mapping.value or ""
            return

        # direct and expression mappings only fire when the source is present
        if not mapping.tool_field or mapping.tool_field not in args:
            return

        source = args[mapping.tool_field]
        if mapping.transformation == TransformationType.DIRECT:
            payload[mapping.api_field] = source
            return

        try:
            payload[mapping.api_field] = evaluate_expression(mapping.expression or "value", source)
        except ExpressionError as e:
            logger.warning("Expression evaluation failed", api_field=mapping.api_field, error=str(e))
            raise TransformationError(
                f"Failed to evaluate expression for field {mapping.api_field}: {e}",
                api_field=mapping.api_field,
            ) from e
