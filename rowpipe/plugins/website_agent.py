import json
import re
from dataclasses import dataclass
from typing import Any, Dict

from ..crawler import EXTRACTOR_SYSTEM, MERGER_SYSTEM, NAVIGATOR_SYSTEM, CrawlSettings, WebsiteCrawler
from ..domain import ModelConfig, PluginPacket, PluginResult, text_part
from ..errors import ConfigurationError, PluginExecutionError
from ..pipeline.config import Limits, resolve_model_config
from ..utils import render_parts, render_template
from ..utils.schema import check_schema
from .base import BasePlugin, PluginExecutionContext, PluginKind

URL_PATTERN = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)
DEFAULT_SCHEMA = {
    "type": "object",
    "properties": {"summary": {"type": "string"}},
    "required": ["summary"],
}


@dataclass
class WebsiteAgentConfig:
    plugin_id: str
    url: str
    schema: Dict[str, Any]
    budget: int
    batch_size: int
    max_chars: int
    navigator: ModelConfig
    extractor: ModelConfig
    merger: ModelConfig


def _positive_int(raw: Dict[str, Any], key: str, default: int) -> int:
    value = raw.get(key, default)
    if not isinstance(value, int) or value < 1:
        raise ConfigurationError(f"website-agent '{key}' must be a positive integer, got {value!r}")
    return value


class WebsiteAgentPlugin(BasePlugin):
    """Crawls a site from a seed URL and extracts one object matching `schema`."""

    kind = PluginKind.WEBSITE_AGENT

    async def resolve_config(self, raw_config: Dict[str, Any], row: Dict[str, Any],
                             inherited: ModelConfig) -> WebsiteAgentConfig:
        plugin_id = raw_config["id"]
        url = render_template(raw_config.get("url") or "", row).strip()
        if not URL_PATTERN.match(url):
            raise PluginExecutionError(plugin_id, f"Invalid seed URL: {url!r}")

        schema = raw_config.get("schema") or DEFAULT_SCHEMA
        if isinstance(schema, str):
            try:
                schema = json.loads(render_template(schema, row))
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"website-agent schema is not valid JSON: {e}") from e
        check_schema(schema)

        base = ModelConfig(
            model=inherited.model,
            temperature=inherited.temperature,
            reasoning_effort=inherited.reasoning_effort,
        )

        def _role(key: str, default_system: str) -> ModelConfig:
            config = resolve_model_config(raw_config.get(key), base)
            config.system_parts = render_parts(config.system_parts, row) or [text_part(default_system)]
            config.prompt_parts = render_parts(config.prompt_parts, row)
            return config

        return WebsiteAgentConfig(
            plugin_id=plugin_id,
            url=url,
            schema=schema,
            budget=_positive_int(raw_config, "budget", Limits.CRAWL_BUDGET),
            batch_size=_positive_int(raw_config, "batch_size", Limits.CRAWL_BATCH_SIZE),
            max_chars=_positive_int(raw_config, "max_chars", Limits.PAGE_TEXT_LIMIT),
            navigator=_role("navigator", NAVIGATOR_SYSTEM),
            extractor=_role("extractor", EXTRACTOR_SYSTEM),
            merger=_role("merger", MERGER_SYSTEM),
        )

    async def execute(self, config: WebsiteAgentConfig, context: PluginExecutionContext) -> PluginResult:
        services = context.services
        if services.browser is None:
            raise PluginExecutionError(config.plugin_id, "website-agent requires a browser")

        crawler = WebsiteCrawler(
            browser=services.browser,
            navigator=services.clients.create(config.navigator),
            extractor=services.clients.create(config.extractor),
            merger=services.clients.create(config.merger),
            max_retries=services.max_retries,
            cache=services.cache,
        )
        outcome = await crawler.crawl(CrawlSettings(
            seed_url=config.url,
            schema=config.schema,
            budget=config.budget,
            batch_size=config.batch_size,
            max_chars=config.max_chars,
            max_candidates=Limits.MAX_CANDIDATE_LINKS,
        ))
        pages = [item["url"] for item in outcome.state.extracted]
        await context.emit(
            "json",
            f"{context.output_basename}_{config.plugin_id}.json",
            {"url": config.url, "pages": pages, "data": outcome.data},
        )
        content = json.dumps(outcome.data, indent=2, ensure_ascii=False)
        return PluginResult(packets=[PluginPacket(
            data=outcome.data,
            content_parts=[text_part(f"Website data from {config.url}:\n{content}")],
        )])
