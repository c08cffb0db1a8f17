"""
Shared services: response/page caches and the HTTP fetcher.
"""
import hashlib
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .domain import FetchResponse, SearchHit
from .errors import NetworkError
from .interfaces import ICache, IFetcher, IWebSearch
from .utils import async_retry, normalize_url

logger = logging.getLogger("rowpipe.services")

FETCH_CACHE_TTL = 24 * 60 * 60
SEARCH_CACHE_TTL = 24 * 60 * 60
SERPER_URL = "https://google.serper.dev/search"
USER_AGENT = "Mozilla/5.0 (compatible; rowpipe/0.3)"


class MemoryCache(ICache):
    """Process-local cache with optional per-entry TTL."""

    def __init__(self):
        self._store: Dict[str, Tuple[Any, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires is not None and expires < time.time():
            del self._store[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._store[key] = (value, time.time() + ttl if ttl else None)

    def __len__(self):
        return len(self._store)


class FileCache(ICache):
    """JSON files under a directory, one per key (named by the key's SHA-256)."""

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, key: str) -> str:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return os.path.join(self.directory, f"{digest}.json")

    async def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            entry = json.load(f)
        if entry.get("expires") is not None and entry["expires"] < time.time():
            os.remove(path)
            return None
        return entry["value"]

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        entry = {"expires": time.time() + ttl if ttl else None, "value": value}
        with open(self._path(key), "w", encoding="utf-8") as f:
            json.dump(entry, f, ensure_ascii=False)


class HttpFetcher(IFetcher):
    """httpx-based GET with retries on transport errors and a URL-keyed cache."""

    def __init__(self, cache: Optional[ICache] = None, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 30.0):
        self.cache = cache
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10.0, read=timeout, write=timeout, pool=10.0),
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    async def fetch(self, url: str) -> FetchResponse:
        key = f"fetch:{normalize_url(url)}"
        if self.cache:
            cached = await self.cache.get(key)
            if cached is not None:
                return FetchResponse.from_dict(cached)

        response = await self._get(url)
        result = FetchResponse(
            url=str(response.url),
            status=response.status_code,
            text=response.text,
            content_type=response.headers.get("content-type", ""),
        )
        if result.ok and self.cache:
            await self.cache.set(key, result.to_dict(), ttl=FETCH_CACHE_TTL)
        return result

    async def fetch_bytes(self, url: str) -> bytes:
        response = await self._get(url)
        if response.status_code >= 400:
            raise NetworkError(url, f"HTTP {response.status_code}", status=response.status_code)
        return response.content

    @async_retry(max_retries=2, delay=0.5, exceptions=(NetworkError,))
    async def _get(self, url: str) -> httpx.Response:
        try:
            return await self.client.get(url)
        except httpx.HTTPError as e:
            raise NetworkError(url, str(e) or type(e).__name__) from e

    async def close(self):
        await self.client.aclose()


class SerperSearch(IWebSearch):
    """Google results through the Serper API, cached per (query, num, gl, hl)."""

    def __init__(self, api_key: str, cache: Optional[ICache] = None,
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.api_key = api_key
        self.cache = cache
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    async def search(self, query: str, num: int = 5, gl: Optional[str] = None,
                     hl: Optional[str] = None) -> List[SearchHit]:
        payload: Dict[str, Any] = {"q": query, "num": num}
        if gl:
            payload["gl"] = gl
        if hl:
            payload["hl"] = hl
        key = "serper:" + json.dumps(payload, sort_keys=True)
        if self.cache:
            cached = await self.cache.get(key)
            if cached is not None:
                return [SearchHit.from_dict(d) for d in cached]

        logger.debug(f"Searching {query!r}")
        data = await self._post(payload)
        hits = [SearchHit.from_dict(item) for item in data.get("organic") or [] if item.get("link")]
        if self.cache:
            await self.cache.set(key, [hit.to_dict() for hit in hits], ttl=SEARCH_CACHE_TTL)
        return hits

    @async_retry(max_retries=2, delay=0.5, exceptions=(NetworkError,))
    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.client.post(
                SERPER_URL, json=payload, headers={"X-API-KEY": self.api_key}
            )
        except httpx.HTTPError as e:
            raise NetworkError(SERPER_URL, str(e) or type(e).__name__) from e
        if response.status_code >= 400:
            raise NetworkError(SERPER_URL, f"HTTP {response.status_code}", status=response.status_code)
        return response.json()

    async def close(self):
        await self.client.aclose()
