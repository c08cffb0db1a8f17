import json
from dataclasses import dataclass
from typing import Any, Dict

from ..domain import ModelConfig, PluginPacket, PluginResult
from ..errors import ConfigurationError
from ..utils import render_template
from ..utils.schema import check_schema, schema_errors
from .base import BasePlugin, PluginExecutionContext, PluginKind

_RESERVED = ("index", "steps")


@dataclass
class ValidationConfig:
    plugin_id: str
    schema: Dict[str, Any]
    target: Any


class ValidationPlugin(BasePlugin):
    """Drops rows whose target (the whole row by default) fails a JSON schema."""

    kind = PluginKind.VALIDATION

    async def resolve_config(self, raw_config: Dict[str, Any], row: Dict[str, Any],
                             inherited: ModelConfig) -> ValidationConfig:
        schema = raw_config.get("schema")
        if isinstance(schema, str):
            try:
                schema = json.loads(schema)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"Validation schema is not valid JSON: {e}") from e
        if not isinstance(schema, dict):
            raise ConfigurationError("Validation plugin requires a 'schema' object")
        check_schema(schema)

        template = raw_config.get("target")
        if template is None:
            target = {k: v for k, v in row.items() if k not in _RESERVED}
        else:
            target = render_template(template, row)
            if target.strip().startswith(("{", "[")):
                try:
                    target = json.loads(target)
                except json.JSONDecodeError:
                    pass  # validated as the raw string
        return ValidationConfig(plugin_id=raw_config["id"], schema=schema, target=target)

    async def execute(self, config: ValidationConfig, context: PluginExecutionContext) -> PluginResult:
        errors = schema_errors(config.target, config.schema)
        if errors:
            await context.emit(
                "validation",
                f"{context.output_basename}_{config.plugin_id}_errors.json",
                {"errors": errors, "target": config.target},
            )
            return PluginResult(packets=[])
        return PluginResult(packets=[PluginPacket(data={}, content_parts=[])])
