"""
Plugin content-provider protocol.
=================================
Plugins run before a step's model call. Each resolves its raw config against
the row, then executes and yields packets: structured data for the output
router plus content blocks prepended to the step's prompt.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from ..domain import ModelConfig, PluginResult
from ..errors import ConfigurationError
from ..interfaces import IArtifactWriter, IBrowser, ICache, IFetcher, IWebSearch
from ..llm import LLMClientFactory
from ..pipeline.artifacts import ArtifactEvent

if TYPE_CHECKING:
    from .dedupe import DedupeStore


class PluginKind(str, Enum):
    """Closed set of plugin kinds; a new plugin means a new member here."""
    VALIDATION = "validation"
    DEDUPE = "dedupe"
    URL_EXPANDER = "url-expander"
    WEBSITE_AGENT = "website-agent"
    WEB_SEARCH = "web-search"

    @classmethod
    def parse(cls, value: str) -> "PluginKind":
        try:
            return cls(value)
        except ValueError:
            known = ", ".join(k.value for k in cls)
            raise ConfigurationError(f"Unknown plugin type '{value}' (known: {known})") from None


@dataclass
class PluginServices:
    """Shared collaborators handed to every plugin execution."""
    clients: LLMClientFactory
    fetcher: Optional[IFetcher] = None
    cache: Optional[ICache] = None
    browser: Optional[IBrowser] = None
    search: Optional[IWebSearch] = None
    dedupe: Optional["DedupeStore"] = None
    artifacts: Optional[IArtifactWriter] = None
    max_retries: int = 3


@dataclass
class PluginExecutionContext:
    row: Dict[str, Any]
    row_index: int
    step_index: int
    plugin_index: int
    services: PluginServices
    temp_dir: str
    output_basename: str
    output_extension: str

    async def emit(self, type: str, filename: str, content: Any) -> Optional[str]:
        """Announces an artifact if a writer is attached."""
        if self.services.artifacts is None:
            return None
        return await self.services.artifacts.emit(ArtifactEvent(
            row=self.row_index,
            step=self.step_index,
            type=type,
            filename=filename,
            content=content,
        ))


class BasePlugin(ABC):
    """Common interface of every plugin kind."""

    kind: PluginKind

    @abstractmethod
    async def resolve_config(self, raw_config: Dict[str, Any], row: Dict[str, Any],
                             inherited: ModelConfig) -> Any:
        """
        Render templated fields against the row and fill defaults.

        Args:
            raw_config: Plugin entry from the step config, including its `id`
            row: Template namespace of the current row
            inherited: The step's model settings, for plugins that call models

        Returns:
            A plugin-specific resolved configuration
        """
        pass

    @abstractmethod
    async def execute(self, config: Any, context: PluginExecutionContext) -> PluginResult:
        """
        Produce packets. Zero packets drops the row for this branch.
        """
        pass


class PluginRegistry:
    """Maps each PluginKind to its implementation."""

    def __init__(self):
        self._plugins: Dict[PluginKind, BasePlugin] = {}

    def register(self, plugin: BasePlugin):
        if plugin.kind in self._plugins:
            raise ConfigurationError(f"Plugin '{plugin.kind.value}' is already registered")
        self._plugins[plugin.kind] = plugin

    def get(self, kind: Any) -> BasePlugin:
        kind = kind if isinstance(kind, PluginKind) else PluginKind.parse(kind)
        plugin = self._plugins.get(kind)
        if plugin is None:
            raise ConfigurationError(f"No implementation registered for plugin '{kind.value}'")
        return plugin

    def kinds(self) -> List[PluginKind]:
        return list(self._plugins)
