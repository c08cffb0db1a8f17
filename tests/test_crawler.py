import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json
import re
import unittest


from rowpipe.crawler import (
    EXTRACTOR_SYSTEM, MERGER_SYSTEM, NAVIGATOR_SYSTEM, CrawlSettings, WebsiteCrawler,
)
from rowpipe.domain import ModelConfig, text_part
from rowpipe.llm import LLMClientFactory
from rowpipe.mocks import ScriptedLLMProvider, StaticBrowser, system_text, user_text
from rowpipe.services import MemoryCache
from rowpipe.utils.schema import make_schema_optional

SCHEMA = {
    "type": "object",
    "properties": {
        "company": {"type": "string"},
        "email": {"type": "string"},
        "team": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["company", "email"],
}

SEED = "https://acme.test/"
SUBPAGES = ["about", "contact", "team", "jobs", "blog"]


def site():
    nav = "".join(f'<a href="/{name}">{name.title()}</a>' for name in SUBPAGES)
    pages = {SEED: f"<html><head><title>Acme</title></head><body><h1>Acme Corp</h1>{nav}"
                   '<a href="https://elsewhere.test/x">Partner</a></body></html>'}
    for name in SUBPAGES:
        pages[f"https://acme.test/{name}"] = f"<html><title>{name}</title><body>{name} page</body></html>"
    return pages


class CrawlScript:
    """Answers navigator, extractor and merger calls by their system prompt."""

    def __init__(self, choose=None, navigator_error=None):
        self.choose = choose or (lambda links: links)
        self.navigator_error = navigator_error
        self.navigator_calls = 0
        self.merger_calls = 0

    def __call__(self, request):
        system = system_text(request)
        if NAVIGATOR_SYSTEM in system:
            self.navigator_calls += 1
            if self.navigator_error:
                return self.navigator_error
            links = re.findall(r"^\[\d+\] (\S+)", user_text(request), re.M)
            return {"next_urls": self.choose(links), "is_done": False, "reasoning": "more"}
        if MERGER_SYSTEM in system:
            self.merger_calls += 1
            return {"company": "Acme Corp", "email": "hi@acme.test", "team": ["Ann"]}
        if EXTRACTOR_SYSTEM in system:
            if "URL: https://acme.test/contact" in user_text(request):
                return {"company": None, "email": "hi@acme.test"}
            return {"company": "Acme Corp", "email": None}
        raise AssertionError(f"unexpected request: {system[:80]}")


def make_crawler(script, browser, cache=None, max_retries=1):
    factory = LLMClientFactory(ScriptedLLMProvider(handler=script), concurrency=4)

    def client(system):
        return factory.create(ModelConfig(model="m", system_parts=[text_part(system)]))

    return WebsiteCrawler(
        browser=browser,
        navigator=client(NAVIGATOR_SYSTEM),
        extractor=client(EXTRACTOR_SYSTEM),
        merger=client(MERGER_SYSTEM),
        max_retries=max_retries,
        cache=cache,
    )


class TestWebsiteCrawler(unittest.IsolatedAsyncioTestCase):

    async def test_budget_caps_pages_visited(self):
        browser = StaticBrowser(site())
        script = CrawlScript()
        outcome = await make_crawler(script, browser).crawl(
            CrawlSettings(seed_url=SEED, schema=SCHEMA, budget=3, batch_size=3)
        )

        self.assertLessEqual(len(browser.visits), 3)
        self.assertEqual(len(outcome.state.extracted), 3)
        self.assertEqual(outcome.state.remaining, 0)
        self.assertEqual(script.merger_calls, 1)
        self.assertEqual(outcome.data["email"], "hi@acme.test")

    async def test_off_origin_links_are_not_candidates(self):
        browser = StaticBrowser(site())
        outcome = await make_crawler(CrawlScript(), browser).crawl(
            CrawlSettings(seed_url=SEED, schema=SCHEMA, budget=1)
        )
        self.assertNotIn("https://elsewhere.test/x", outcome.state.known_links)
        self.assertEqual(outcome.state.known_links["https://acme.test/about"].first_seen_on, SEED)

    async def test_hallucinated_urls_are_rejected(self):
        browser = StaticBrowser(site())
        script = CrawlScript(choose=lambda links: ["https://acme.test/secret", "https://evil.test/"])
        outcome = await make_crawler(script, browser).crawl(
            CrawlSettings(seed_url=SEED, schema=SCHEMA, budget=5)
        )

        self.assertEqual(browser.visits, [SEED])
        self.assertEqual(len(outcome.state.extracted), 1)

    async def test_single_page_skips_merge(self):
        browser = StaticBrowser(site())
        script = CrawlScript(choose=lambda links: [])
        outcome = await make_crawler(script, browser).crawl(
            CrawlSettings(seed_url=SEED, schema=SCHEMA, budget=5)
        )

        self.assertEqual(script.merger_calls, 0)
        self.assertEqual(outcome.data, {"company": "Acme Corp", "email": None})

    async def test_navigator_failure_keeps_what_was_found(self):
        browser = StaticBrowser(site())
        script = CrawlScript(navigator_error=RuntimeError("model offline"))
        outcome = await make_crawler(script, browser).crawl(
            CrawlSettings(seed_url=SEED, schema=SCHEMA, budget=5)
        )

        self.assertEqual(script.navigator_calls, 1)
        self.assertEqual(outcome.data["company"], "Acme Corp")

    async def test_failed_page_is_dropped(self):
        pages = site()
        del pages["https://acme.test/about"]
        browser = StaticBrowser(pages)
        script = CrawlScript(choose=lambda links: [u for u in links if u.endswith(("/about", "/contact"))])
        outcome = await make_crawler(script, browser).crawl(
            CrawlSettings(seed_url=SEED, schema=SCHEMA, budget=5, batch_size=2)
        )

        urls = [item["url"] for item in outcome.state.extracted]
        self.assertNotIn("https://acme.test/about", urls)
        self.assertIn("https://acme.test/contact", urls)
        self.assertIn("https://acme.test/about", outcome.state.visited)

    async def test_dead_link_does_not_end_single_page_batches(self):
        pages = site()
        del pages["https://acme.test/about"]
        browser = StaticBrowser(pages)
        script = CrawlScript(choose=lambda links: links[:1])
        outcome = await make_crawler(script, browser).crawl(
            CrawlSettings(seed_url=SEED, schema=SCHEMA, budget=5, batch_size=1)
        )

        urls = [item["url"] for item in outcome.state.extracted]
        self.assertEqual(urls, [SEED] + [f"https://acme.test/{name}" for name in SUBPAGES[1:]])
        self.assertEqual(outcome.state.remaining, 0)
        self.assertEqual(len(browser.visits), 6)

    async def test_unreachable_seed_returns_empty_object(self):
        browser = StaticBrowser({})
        outcome = await make_crawler(CrawlScript(), browser).crawl(
            CrawlSettings(seed_url=SEED, schema=SCHEMA, budget=3)
        )
        self.assertEqual(outcome.data, {})

    async def test_snapshots_are_cached(self):
        cache = MemoryCache()
        settings = CrawlSettings(seed_url=SEED, schema=SCHEMA, budget=1)
        first = StaticBrowser(site())
        await make_crawler(CrawlScript(), first, cache=cache).crawl(settings)
        second = StaticBrowser(site())
        await make_crawler(CrawlScript(), second, cache=cache).crawl(settings)

        self.assertEqual(first.visits, [SEED])
        self.assertEqual(second.visits, [])


def test_make_schema_optional_relaxes_every_level():
    schema = {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "kind": {"type": "string", "enum": ["a", "b"]},
            "address": {
                "type": "object",
                "properties": {"city": {"type": ["string", "integer"]}},
                "required": ["city"],
            },
        },
        "required": ["name"],
    }
    relaxed = make_schema_optional(schema)

    assert "required" not in relaxed
    assert "required" not in relaxed["properties"]["address"]
    assert relaxed["properties"]["name"]["type"] == ["string", "null"]
    assert relaxed["properties"]["kind"]["enum"] == ["a", "b", None]
    assert relaxed["properties"]["address"]["properties"]["city"]["type"] == ["string", "integer", "null"]
    assert schema["required"] == ["name"]
    assert json.dumps(schema).count("null") == 0


def test_make_schema_optional_leaves_keyword_named_properties_alone():
    schema = {
        "type": "object",
        "properties": {
            "required": {"type": "boolean"},
            "enum": {"type": "string"},
            "tags": {"type": "array", "items": {"type": "object", "properties": {"type": {"type": "string"}},
                                                "required": ["type"]}},
        },
        "required": ["required"],
        "anyOf": [{"required": ["enum"]}],
    }
    relaxed = make_schema_optional(schema)

    assert relaxed["properties"]["required"] == {"type": ["boolean", "null"]}
    assert relaxed["properties"]["enum"] == {"type": ["string", "null"]}
    item = relaxed["properties"]["tags"]["items"]
    assert item["properties"]["type"] == {"type": ["string", "null"]}
    assert "required" not in item
    assert relaxed["anyOf"] == [{}]
    assert "required" not in relaxed
