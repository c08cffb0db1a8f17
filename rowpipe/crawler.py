"""
Website agent crawl loop.
=========================
Seed visit, then navigator-chosen batches of same-origin pages, each page
extracted against a relaxed schema, finally merged into one strict object.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .domain import CrawlState, LinkInfo, PageSnapshot, text_part
from .errors import ConfigurationError, CrawlPageError
from .interfaces import IBrowser, ICache
from .llm import BoundLLMClient
from .querier import RetryQuerier
from .utils import normalize_url, same_origin
from .utils.html import html_to_text
from .utils.schema import make_schema_optional

logger = logging.getLogger("rowpipe.crawler")

PAGE_CACHE_PREFIX = "website-agent-v1:"
PAGE_CACHE_TTL = 24 * 60 * 60

NAVIGATOR_SYSTEM = (
    "You are an autonomous web scraper. Analyze findings and available links to decide "
    "which pages to visit next."
)
EXTRACTOR_SYSTEM = (
    "You are a data extraction expert. Extract information from the website content to "
    "populate the JSON schema. Return null for any fields where information is not "
    "available on this page."
)
MERGER_SYSTEM = (
    "You are a data consolidation expert. Merge the JSON objects into a single "
    "comprehensive object. Use the most complete and accurate values from each source."
)

NAVIGATOR_SCHEMA = {
    "type": "object",
    "properties": {
        "next_urls": {"type": "array", "items": {"type": "string"}},
        "reasoning": {"type": "string"},
        "is_done": {"type": "boolean"},
    },
    "required": ["next_urls", "is_done"],
}

NAVIGATOR_TASK = """Status:
- Pages visited: {visited}
- Remaining budget: {remaining} page(s)
- You may choose up to {batch} URL(s) this round

Target schema:
{schema}

Current findings:
{findings}

Available links:
{links}

Instructions:
1. Pick the links most likely to fill the missing fields of the target schema.
2. Prefer About, Contact, Team and similar pages over listings or legal pages.
3. Only choose URLs from the list above, copied exactly.
4. Set is_done to true when the findings already cover the schema."""


@dataclass
class CrawlSettings:
    seed_url: str
    schema: Dict[str, Any]
    budget: int = 10
    batch_size: int = 3
    max_chars: int = 20000
    max_candidates: int = 50


@dataclass
class CrawlOutcome:
    data: Dict[str, Any]
    state: CrawlState


def format_links(candidates: List[LinkInfo]) -> str:
    return "\n".join(
        f'[{i}] {c.href} (Text: "{c.text}", Found on: "{c.first_seen_on}")'
        for i, c in enumerate(candidates)
    )


class WebsiteCrawler:
    """
    Budget rule: only successful extractions consume budget, the seed included.
    Every attempted URL is marked visited, so failed pages shrink the candidate
    set and the loop ends once links run out.
    """

    def __init__(self, browser: IBrowser, navigator: BoundLLMClient, extractor: BoundLLMClient,
                 merger: BoundLLMClient, max_retries: int = 3, cache: Optional[ICache] = None):
        self.browser = browser
        self.navigator = navigator
        self.extractor = extractor
        self.merger = merger
        self.querier = RetryQuerier(max_retries)
        self.cache = cache

    async def crawl(self, settings: CrawlSettings) -> CrawlOutcome:
        state = CrawlState(seed_url=normalize_url(settings.seed_url), remaining=settings.budget)
        relaxed = make_schema_optional(settings.schema)

        if await self._visit(state, state.seed_url, relaxed, settings, is_seed=True):
            state.consume(1)

        while state.remaining > 0:
            candidates = state.candidates(settings.max_candidates)
            if not candidates:
                break
            try:
                decision = await self._navigate(state, candidates, settings)
            except ConfigurationError:
                raise
            except Exception as e:
                logger.warning(f"Navigator failed; stopping crawl of {state.seed_url} "
                               f"with {len(state.extracted)} page(s): {e}")
                break
            if decision.get("is_done"):
                logger.info(f"Navigator done for {state.seed_url}: {decision.get('reasoning', '')}")
                break

            batch = self._select_batch(decision, candidates, min(settings.batch_size, state.remaining))
            if not batch:
                break
            results = await asyncio.gather(
                *[self._visit(state, url, relaxed, settings) for url in batch]
            )
            state.consume(sum(1 for ok in results if ok))

        return CrawlOutcome(data=await self._merge(state, settings), state=state)

    @staticmethod
    def _select_batch(decision: Dict[str, Any], candidates: List[LinkInfo], size: int) -> List[str]:
        allowed = {c.href for c in candidates}
        batch: List[str] = []
        for url in decision.get("next_urls") or []:
            url = normalize_url(url) if isinstance(url, str) else ""
            if url not in allowed:
                logger.debug(f"Rejected URL outside the candidate set: {url!r}")
                continue
            if url not in batch:
                batch.append(url)
        return batch[:size]

    async def _snapshot(self, url: str) -> PageSnapshot:
        key = PAGE_CACHE_PREFIX + url
        if self.cache:
            cached = await self.cache.get(key)
            if cached is not None:
                return PageSnapshot.from_dict(cached)
        snapshot = await self.browser.fetch_page(url)
        if self.cache:
            await self.cache.set(key, snapshot.to_dict(), ttl=PAGE_CACHE_TTL)
        return snapshot

    async def _visit(self, state: CrawlState, url: str, relaxed: Dict[str, Any],
                     settings: CrawlSettings, is_seed: bool = False) -> bool:
        """Visit and extract one page; False when the page is dropped."""
        state.mark_visited(url)
        try:
            snapshot = await self._snapshot(url)
            final_url = normalize_url(snapshot.url)
            state.mark_visited(final_url)
            if is_seed:
                state.seed_url = final_url
            state.add_links(
                [(normalize_url(href), text) for href, text in snapshot.links
                 if same_origin(href, state.seed_url)],
                url,
            )
            text = html_to_text(snapshot.html, settings.max_chars)
            data = await self._extract(url, snapshot.title, text, relaxed)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.warning(f"⚠️ Dropped page {CrawlPageError(url, str(e))}")
            return False
        state.extracted.append({"url": url, "data": data})
        logger.debug(f"Extracted {url} ({state.remaining} budget left)")
        return True

    async def _extract(self, url: str, title: str, text: str, relaxed: Dict[str, Any]) -> Any:
        content = f"URL: {url}\nTitle: {title}\n\nContent:\n{text}"
        result = await self.querier.query(
            self.extractor,
            self.extractor.build_messages(suffix=[text_part(content)]),
            schema=relaxed,
        )
        return result.value

    async def _navigate(self, state: CrawlState, candidates: List[LinkInfo],
                        settings: CrawlSettings) -> Dict[str, Any]:
        task = NAVIGATOR_TASK.format(
            visited=len(state.visited),
            remaining=state.remaining,
            batch=min(settings.batch_size, state.remaining),
            schema=json.dumps(settings.schema, indent=2),
            findings=state.findings_text(),
            links=format_links(candidates),
        )
        result = await self.querier.query(
            self.navigator,
            self.navigator.build_messages(suffix=[text_part(task)]),
            schema=NAVIGATOR_SCHEMA,
        )
        return result.value

    async def _merge(self, state: CrawlState, settings: CrawlSettings) -> Dict[str, Any]:
        if not state.extracted:
            return {}
        if len(state.extracted) == 1:
            return state.extracted[0]["data"]
        partials = json.dumps([item["data"] for item in state.extracted], indent=2, ensure_ascii=False)
        result = await self.querier.query(
            self.merger,
            self.merger.build_messages(suffix=[text_part(f"Partial extractions:\n{partials}")]),
            schema=settings.schema,
        )
        return result.value
