"""
JSON Schema helpers.
====================
Draft-07 validation and the relaxed variant used for partial extraction.
"""
import copy
from typing import Any, Dict, List

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from ..errors import ConfigurationError


SCHEMA_MAPS = ("properties", "patternProperties", "definitions")
SCHEMA_LISTS = ("anyOf", "oneOf", "allOf")
SCHEMA_VALUES = ("items", "additionalItems", "additionalProperties", "not", "if", "then", "else")


def make_schema_optional(schema: Dict[str, Any]) -> Dict[str, Any]:
    """
    Returns a deep copy where every `type` also admits null and no
    `required` list survives, at every nesting level.
    Only subschema positions are walked, so property names are never
    mistaken for keywords.
    """
    relaxed = copy.deepcopy(schema)

    def _relax(node):
        if isinstance(node, list):
            for item in node:
                _relax(item)
            return
        if not isinstance(node, dict):
            return
        node.pop("required", None)
        node_type = node.get("type")
        if isinstance(node_type, str) and node_type != "null":
            node["type"] = [node_type, "null"]
        elif isinstance(node_type, list) and "null" not in node_type:
            node["type"] = node_type + ["null"]
        if isinstance(node.get("enum"), list) and None not in node["enum"]:
            node["enum"] = list(node["enum"]) + [None]
        for keyword in SCHEMA_MAPS:
            if isinstance(node.get(keyword), dict):
                for subschema in node[keyword].values():
                    _relax(subschema)
        for keyword in SCHEMA_LISTS + SCHEMA_VALUES:
            if keyword in node:
                _relax(node[keyword])

    _relax(relaxed)
    return relaxed


def check_schema(schema: Dict[str, Any]):
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        raise ConfigurationError(f"Invalid JSON schema: {e.message}") from e


def schema_errors(instance: Any, schema: Dict[str, Any]) -> List[str]:
    """Field-level errors as `path: message` strings, empty when valid."""
    validator = Draft7Validator(schema)
    errors = []
    for error in sorted(validator.iter_errors(instance), key=lambda e: list(e.path)):
        path = "/".join(str(p) for p in error.path) or "(root)"
        errors.append(f"{path}: {error.message}")
    return errors
