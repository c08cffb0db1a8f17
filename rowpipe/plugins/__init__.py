"""Plugin kinds, registry and the built-in implementations."""
from .base import BasePlugin, PluginExecutionContext, PluginKind, PluginRegistry, PluginServices
from .dedupe import DedupePlugin, DedupeStore
from .url_expander import UrlExpanderPlugin
from .validation import ValidationPlugin
from .web_search import WebSearchPlugin
from .website_agent import WebsiteAgentPlugin


def build_default_registry() -> PluginRegistry:
    registry = PluginRegistry()
    for plugin in (ValidationPlugin(), DedupePlugin(), UrlExpanderPlugin(), WebsiteAgentPlugin(),
                   WebSearchPlugin()):
        registry.register(plugin)
    return registry


__all__ = [
    'BasePlugin',
    'PluginExecutionContext',
    'PluginKind',
    'PluginRegistry',
    'PluginServices',
    'DedupePlugin',
    'DedupeStore',
    'UrlExpanderPlugin',
    'ValidationPlugin',
    'WebSearchPlugin',
    'WebsiteAgentPlugin',
    'build_default_registry',
]
