import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List

from ..domain import ModelConfig, PluginPacket, PluginResult, text_part
from ..errors import ConfigurationError, PluginExecutionError
from ..pipeline.config import Limits
from ..utils import render_template
from ..utils.html import html_to_text
from .base import BasePlugin, PluginExecutionContext, PluginKind

logger = logging.getLogger("rowpipe.plugins.url_expander")

URL_IN_TEXT = re.compile(r"https?://[^\s<>\"']+")
MODES = ("auto", "fetch", "browser")


def find_urls(text: str) -> List[str]:
    """Unique URLs in order of appearance, trailing punctuation and unbalanced ')' trimmed."""
    urls: List[str] = []
    for url in URL_IN_TEXT.findall(text):
        while url:
            if url[-1] in ".,!?;:":
                url = url[:-1]
            elif url[-1] == ")" and url.count(")") > url.count("("):
                url = url[:-1]
            else:
                break
        if url and url not in urls:
            urls.append(url)
    return urls


@dataclass
class UrlExpanderConfig:
    plugin_id: str
    mode: str
    max_chars: int
    urls: List[str] = field(default_factory=list)


class UrlExpanderPlugin(BasePlugin):
    """Fetches every URL mentioned in `text` (all string fields by default) into the prompt."""

    kind = PluginKind.URL_EXPANDER

    async def resolve_config(self, raw_config: Dict[str, Any], row: Dict[str, Any],
                             inherited: ModelConfig) -> UrlExpanderConfig:
        mode = raw_config.get("mode", "auto")
        if mode not in MODES:
            raise ConfigurationError(f"url-expander mode must be one of {MODES}, got {mode!r}")
        max_chars = raw_config.get("max_chars", Limits.URL_EXPANDER_CHARS)
        if not isinstance(max_chars, int) or max_chars < 1:
            raise ConfigurationError("url-expander 'max_chars' must be a positive integer")

        template = raw_config.get("text")
        if template is None:
            text = "\n".join(str(v) for k, v in row.items() if isinstance(v, str))
        else:
            text = render_template(template, row)
        return UrlExpanderConfig(
            plugin_id=raw_config["id"], mode=mode, max_chars=max_chars, urls=find_urls(text)
        )

    async def execute(self, config: UrlExpanderConfig, context: PluginExecutionContext) -> PluginResult:
        services = context.services
        use_browser = config.mode == "browser" or (config.mode == "auto" and services.browser is not None)
        if use_browser and services.browser is None:
            raise PluginExecutionError(config.plugin_id, "mode 'browser' requires a browser")
        if not use_browser and services.fetcher is None:
            raise PluginExecutionError(config.plugin_id, "mode 'fetch' requires a fetcher")

        contents: Dict[str, str] = {}
        for url in config.urls:
            if use_browser:
                snapshot = await services.browser.fetch_page(url)
                text = html_to_text(snapshot.html, config.max_chars)
            else:
                response = await services.fetcher.fetch(url)
                if not response.ok:
                    logger.warning(f"[Row {context.row_index}] {url} returned HTTP {response.status}; skipped")
                    continue
                if "html" in response.content_type or response.text.lstrip().startswith("<"):
                    text = html_to_text(response.text, config.max_chars)
                else:
                    text = response.text[:config.max_chars]
            contents[url] = text

        parts = [
            text_part(f"--- Content from {url} ---\n{text}\n--- End of content ---")
            for url, text in contents.items()
        ]
        return PluginResult(packets=[PluginPacket(data={"url_contents": contents}, content_parts=parts)])
