import argparse
import asyncio
import csv
import json
import os
import sys
from typing import Any, Dict, List

from .browser import BrowserPool
from .errors import ConfigurationError
from .llm import CachedLLMProvider, OpenAIChatProvider
from .pipeline import FileSystemArtifactWriter, PipelineLogger, load_pipeline_config
from .pipeline.orchestrator import PipelineOrchestrator, RunResult
from .services import FileCache, HttpFetcher, MemoryCache, SerperSearch


def load_rows(path: str) -> List[Dict[str, Any]]:
    """CSV (every value a string) or a JSON array of objects."""
    if path.lower().endswith(".json"):
        with open(path, "r", encoding="utf-8") as f:
            rows = json.load(f)
        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            raise ConfigurationError(f"{path} must contain a JSON array of objects")
        return rows
    with open(path, "r", encoding="utf-8", newline="") as f:
        return [dict(row) for row in csv.DictReader(f)]


def write_results(path: str, result: RunResult):
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    if path.lower().endswith(".csv"):
        fields: List[str] = []
        for row in result.rows:
            fields.extend(k for k in row if k not in fields)
        with open(path, "w", encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=fields)
            writer.writeheader()
            for row in result.rows:
                writer.writerow({
                    k: json.dumps(v, ensure_ascii=False) if isinstance(v, (dict, list)) else v
                    for k, v in row.items()
                })
        return
    with open(path, "w", encoding="utf-8") as f:
        json.dump(result.rows, f, indent=2, ensure_ascii=False)


async def run(args) -> int:
    logger = PipelineLogger(verbose=args.verbose)
    config = load_pipeline_config(args.config)
    rows = load_rows(args.data)

    cache = FileCache(args.cache_dir) if args.cache_dir else MemoryCache()
    provider = OpenAIChatProvider(base_url=args.base_url, api_key=args.api_key)
    if args.cache_dir:
        provider = CachedLLMProvider(provider, cache)
    fetcher = HttpFetcher(cache=cache)
    serper_key = args.serper_api_key or os.environ.get("SERPER_API_KEY")
    search = SerperSearch(serper_key, cache=cache) if serper_key else None
    browser = BrowserPool(max_pages=config.globals.browser_pages, headless=not args.headed)

    orchestrator = PipelineOrchestrator(
        config,
        provider,
        artifacts=FileSystemArtifactWriter(args.artifacts, fetcher=fetcher, logger=logger),
        browser=browser,
        fetcher=fetcher,
        search=search,
        cache=cache,
        logger=logger,
    )
    try:
        result = await orchestrator.run(rows)
    finally:
        await browser.stop()
        await fetcher.close()
        if search is not None:
            await search.close()

    write_results(args.output, result)
    logger.artifact_saved(args.output)
    if not result.success:
        errors_path = os.path.splitext(args.output)[0] + "_errors.json"
        with open(errors_path, "w", encoding="utf-8") as f:
            json.dump([failure.to_dict() for failure in result.failures], f, indent=2)
        logger.artifact_saved(errors_path)
        return 1
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run a multi-step generation pipeline over rows")
    parser.add_argument("--config", required=True, help="Pipeline configuration (JSON)")
    parser.add_argument("--data", required=True, help="Input rows (.csv or .json)")
    parser.add_argument("--output", default="output/results.json", help="Results file (.json or .csv)")
    parser.add_argument("--artifacts", default="output", help="Directory for generated artifacts")
    parser.add_argument("--cache-dir", default=None, help="Persist model and page cache here")
    parser.add_argument("--base-url", default=None, help="OpenAI-compatible endpoint")
    parser.add_argument("--api-key", default=None, help="API key (defaults to OPENAI_API_KEY)")
    parser.add_argument("--serper-api-key", default=None, help="Web search key (defaults to SERPER_API_KEY)")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    try:
        sys.exit(asyncio.run(run(args)))
    except ConfigurationError as e:
        print(f"❌ Configuration error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
