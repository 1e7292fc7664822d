"""
Workflow Parameters - derive ordered workflow parameters from a resource.

The fields the controller recognizes are described by a JSON Schema
(Draft 7). Only properties named in the schema are read from the
resource's spec; everything else in the spec is ignored.
"""

import json
import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

from plugins.base import Parameters

logger = logging.getLogger(__name__)

DEFAULT_PARAMETER_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["namespace", "size"],
    "properties": {
        "namespace": {"type": "string", "minLength": 1},
        "size": {"type": "integer"},
    },
}


class ParameterError(Exception):
    """A recognized spec field is missing or malformed."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


def validate_parameter_schema(
    schema: Dict[str, Any],
) -> Tuple[bool, Optional[str]]:
    """
    Validate that a parameter schema is a usable JSON Schema.

    Args:
        schema: The schema to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
    except Exception as e:
        return False, f"Invalid schema: {str(e)}"

    if not isinstance(schema.get("properties"), dict) or not schema["properties"]:
        return False, "Invalid schema: 'properties' must name at least one field"
    return True, None


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), sort_keys=True)
    return str(value)


def _offending_field(error: ValidationError) -> str:
    if error.validator == "required":
        missing = [f for f in error.validator_value if f not in error.instance]
        if missing:
            return missing[0]
    if error.absolute_path:
        return str(error.absolute_path[0])
    return "spec"


def derive_parameters(
    resource: Dict[str, Any],
    schema: Optional[Dict[str, Any]] = None,
) -> Parameters:
    """
    Derive the ordered workflow parameters for a resource.

    ``namespace`` falls back to the resource's metadata namespace when the
    spec does not set it. Parameters are emitted in the order the schema
    lists its properties.

    Args:
        resource: Generic attribute map of a custom resource
        schema: Parameter schema, defaults to DEFAULT_PARAMETER_SCHEMA

    Returns:
        Ordered list of (key, value) string pairs

    Raises:
        ParameterError: If a required field is missing or a recognized
            field has the wrong type. The message names the field.
    """
    if schema is None:
        schema = DEFAULT_PARAMETER_SCHEMA

    spec = resource.get("spec")
    if spec is None:
        spec = {}
    if not isinstance(spec, dict):
        raise ParameterError("spec", "spec must be an object")

    recognized = list(schema.get("properties", {}))
    values = {key: spec[key] for key in recognized if key in spec}

    namespace = (resource.get("metadata") or {}).get("namespace")
    if "namespace" in recognized and "namespace" not in values and namespace:
        values["namespace"] = namespace

    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(values), key=lambda e: [str(p) for p in e.path])
    if errors:
        error = errors[0]
        field = _offending_field(error)
        if error.validator == "required":
            raise ParameterError(field, f"spec field '{field}' is required")
        raise ParameterError(field, f"spec field '{field}' is invalid: {error.message}")

    return [(key, _render(values[key])) for key in recognized if key in values]
