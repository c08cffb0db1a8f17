from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from ..domain import ModelConfig, PluginPacket, PluginResult
from ..errors import ConfigurationError
from ..utils import render_template
from .base import BasePlugin, PluginExecutionContext, PluginKind


class DedupeStore:
    """
    Seen keys per dedupe plugin instance, scoped to one pipeline run.
    `claim` never awaits, so check-and-add is atomic on the event loop.
    """

    def __init__(self):
        self._seen: Dict[str, Set[str]] = {}

    def claim(self, plugin_id: str, key: str) -> bool:
        """True for the first occurrence of `key`, False afterwards."""
        seen = self._seen.setdefault(plugin_id, set())
        if key in seen:
            return False
        seen.add(key)
        return True

    def seen(self, plugin_id: str) -> Set[str]:
        return set(self._seen.get(plugin_id, ()))

    def reset(self, plugin_id: Optional[str] = None):
        """Forgets the keys of one plugin instance, or of all of them."""
        if plugin_id is None:
            self._seen.clear()
        else:
            self._seen.pop(plugin_id, None)


@dataclass
class DedupeConfig:
    plugin_id: str
    key: str


class DedupePlugin(BasePlugin):
    """Keeps the first row per rendered key and drops the rest."""

    kind = PluginKind.DEDUPE

    async def resolve_config(self, raw_config: Dict[str, Any], row: Dict[str, Any],
                             inherited: ModelConfig) -> DedupeConfig:
        template = raw_config.get("key")
        if not isinstance(template, str) or not template:
            raise ConfigurationError("Dedupe plugin requires a 'key' template")
        return DedupeConfig(plugin_id=raw_config["id"], key=render_template(template, row).strip())

    async def execute(self, config: DedupeConfig, context: PluginExecutionContext) -> PluginResult:
        store = context.services.dedupe
        if store is None:
            raise ConfigurationError("Dedupe plugin needs a dedupe store in the plugin services")
        if not store.claim(config.plugin_id, config.key):
            return PluginResult(packets=[])
        return PluginResult(packets=[PluginPacket(data={}, content_parts=[])])
