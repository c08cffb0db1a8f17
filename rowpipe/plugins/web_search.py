import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from ..domain import ModelConfig, PluginPacket, PluginResult, SearchHit, text_part
from ..errors import ConfigurationError, NetworkError, PluginExecutionError
from ..pipeline.config import Limits
from ..utils import normalize_url, render_template
from ..utils.html import html_to_text
from .base import BasePlugin, PluginExecutionContext, PluginKind

logger = logging.getLogger("rowpipe.plugins.web_search")

CONTENT_MODES = ("none", "text", "html")
DEDUPE_STRATEGIES = ("none", "domain", "url")


@dataclass
class WebSearchConfig:
    plugin_id: str
    query: str
    limit: int
    mode: str
    dedupe: str
    max_chars: int
    gl: Optional[str] = None
    hl: Optional[str] = None


def dedupe_hits(hits: List[SearchHit], strategy: str) -> List[SearchHit]:
    """First hit per normalized URL or per host (without `www.`) wins."""
    if strategy == "none":
        return list(hits)
    kept, seen = [], set()
    for hit in hits:
        if strategy == "domain":
            key = urlparse(hit.link).netloc.lower()
            key = key[4:] if key.startswith("www.") else key
        else:
            key = normalize_url(hit.link)
        if key in seen:
            continue
        seen.add(key)
        kept.append(hit)
    return kept


def _choice(raw: Dict[str, Any], key: str, default: str, allowed) -> str:
    value = raw.get(key, default)
    if value not in allowed:
        raise ConfigurationError(f"web-search '{key}' must be one of {allowed}, got {value!r}")
    return value


class WebSearchPlugin(BasePlugin):
    """Runs one templated web search; every result becomes its own packet."""

    kind = PluginKind.WEB_SEARCH

    async def resolve_config(self, raw_config: Dict[str, Any], row: Dict[str, Any],
                             inherited: ModelConfig) -> WebSearchConfig:
        plugin_id = raw_config["id"]
        template = raw_config.get("query")
        if not isinstance(template, str) or not template.strip():
            raise ConfigurationError("web-search plugin requires a 'query' template")
        query = render_template(template, row).strip()
        if not query:
            raise PluginExecutionError(plugin_id, "Search query rendered empty")

        limit = raw_config.get("limit", Limits.WEB_SEARCH_LIMIT)
        max_chars = raw_config.get("max_chars", Limits.PAGE_TEXT_LIMIT)
        for key, value in (("limit", limit), ("max_chars", max_chars)):
            if not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"web-search '{key}' must be a positive integer, got {value!r}")

        return WebSearchConfig(
            plugin_id=plugin_id,
            query=query,
            limit=limit,
            mode=_choice(raw_config, "mode", "none", CONTENT_MODES),
            dedupe=_choice(raw_config, "dedupe", "none", DEDUPE_STRATEGIES),
            max_chars=max_chars,
            gl=raw_config.get("gl"),
            hl=raw_config.get("hl"),
        )

    async def execute(self, config: WebSearchConfig, context: PluginExecutionContext) -> PluginResult:
        services = context.services
        if services.search is None:
            raise PluginExecutionError(config.plugin_id, "web-search requires a search service (set SERPER_API_KEY)")
        if config.mode != "none" and services.fetcher is None:
            raise PluginExecutionError(config.plugin_id, f"mode '{config.mode}' requires a fetcher")

        hits = await services.search.search(config.query, num=config.limit, gl=config.gl, hl=config.hl)
        hits = dedupe_hits(hits, config.dedupe)[:config.limit]
        if config.mode != "none":
            await asyncio.gather(*[self._load_content(hit, config, context) for hit in hits])

        if not hits:
            logger.info(f"[Row {context.row_index}] No search results for {config.query!r}")
            return PluginResult(packets=[PluginPacket(
                data={}, content_parts=[text_part(f"No web search results for: {config.query}")]
            )])

        packets = []
        for hit in hits:
            body = hit.content if hit.content else hit.snippet
            packets.append(PluginPacket(
                data=hit.to_dict(),
                content_parts=[text_part(f"Source: {hit.title} ({hit.link})\nContent:\n{body}")],
            ))
        return PluginResult(packets=packets)

    @staticmethod
    async def _load_content(hit: SearchHit, config: WebSearchConfig, context: PluginExecutionContext):
        try:
            response = await context.services.fetcher.fetch(hit.link)
        except NetworkError as e:
            logger.warning(f"[Row {context.row_index}] Could not fetch search result {hit.link}: {e}")
            hit.content = ""
            return
        if not response.ok:
            logger.warning(f"[Row {context.row_index}] {hit.link} returned HTTP {response.status}; content left empty")
            hit.content = ""
        elif config.mode == "html":
            hit.content = response.text[:config.max_chars]
        else:
            hit.content = html_to_text(response.text, config.max_chars)
