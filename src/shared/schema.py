"""JSON Schema utilities for tool input schemas."""

import copy
from typing import Any, NamedTuple

from jsonschema import Draft7Validator


VALID_TYPES = ("string", "number", "integer", "boolean", "array", "object")


class SchemaNormalization(NamedTuple):
    valid: bool
    normalized: dict[str, Any]
    errors: list[str]


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))

    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages


def normalize_input_schema(schema: Any) -> SchemaNormalization:
    """
    Normalize a stored tool input schema into a protocol-compliant object schema.

    Accepts full JSON Schema as well as the simplified form
    ``{"field": "number"}`` / ``{"field": "free text description"}``.
    Normalization never fails; problems are reported in ``errors``.
    """
    if not isinstance(schema, dict):
        errors = [] if schema is None else ["Input schema must be an object"]
        return SchemaNormalization(True, {"type": "object", "properties": {}}, errors)

    if schema and "type" not in schema and "properties" not in schema and all(
        isinstance(v, str) for v in schema.values()
    ):
        properties: dict[str, Any] = {}
        for field_name, value in schema.items():
            if value.lower() in VALID_TYPES:
                properties[field_name] = {
                    "type": value.lower(),
                    "description": f"{field_name} parameter",
                }
            else:
                properties[field_name] = {"type": "string", "description": value}
        return SchemaNormalization(True, {"type": "object", "properties": properties}, [])

    errors: list[str] = []
    normalized = copy.deepcopy(schema)
    normalized["type"] = "object"

    properties = normalized.get("properties")
    if not isinstance(properties, dict):
        if "properties" in schema:
            errors.append("Properties must be an object")
        normalized["properties"] = properties = {}

    if "required" in normalized:
        required = normalized["required"]
        if not isinstance(required, list):
            errors.append("Required must be an array")
            normalized["required"] = []
        else:
            unknown = [f for f in required if f not in properties]
            if unknown:
                errors.append(f"Required fields not in properties: {', '.join(map(str, unknown))}")

    for key, prop in list(properties.items()):
        if not isinstance(prop, dict):
            errors.append(f'Property "{key}" must be an object')
            continue
        if "type" not in prop:
            errors.append(f'Property "{key}" must have a type')
            properties[key] = {"type": "string", **prop}
        elif prop["type"] not in VALID_TYPES:
            errors.append(
                f'Property "{key}" has invalid type "{prop["type"]}". '
                f"Must be one of: {', '.join(VALID_TYPES)}"
            )

    return SchemaNormalization(not errors, normalized, errors)
