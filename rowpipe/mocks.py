import json
from typing import Any, Callable, Dict, List, Optional

from .domain import ModelRequest, ModelResponse, PageSnapshot, parts_text
from .errors import NetworkError
from .interfaces import IBrowser, ILLMProvider
from .utils.html import extract_links, page_title


def system_text(request: ModelRequest) -> str:
    """System message of a request as plain text ('' when absent)."""
    for message in request.messages:
        if message["role"] == "system":
            content = message["content"]
            return content if isinstance(content, str) else parts_text(content)
    return ""


def user_text(request: ModelRequest) -> str:
    """Text of the last user message."""
    for message in reversed(request.messages):
        if message["role"] == "user":
            content = message["content"]
            return content if isinstance(content, str) else parts_text(content, sep="\n")
    return ""


def _to_response(value: Any) -> ModelResponse:
    if isinstance(value, ModelResponse):
        return value
    if value is None:
        return ModelResponse()
    if isinstance(value, (dict, list)):
        return ModelResponse(text=json.dumps(value))
    return ModelResponse(text=str(value))


class ScriptedLLMProvider(ILLMProvider):
    """
    Offline provider for dry runs and tests.
    Answers from `responses` in order, or from `handler(request)`; an
    Exception value is raised instead of returned. Every request is recorded.
    """

    def __init__(self, responses: Optional[List[Any]] = None,
                 handler: Optional[Callable[[ModelRequest], Any]] = None):
        self.responses = list(responses or [])
        self.handler = handler
        self.requests: List[ModelRequest] = []
        self.salts: List[str] = []

    async def complete(self, request: ModelRequest, cache_salt: str = "") -> ModelResponse:
        self.requests.append(request)
        self.salts.append(cache_salt)
        if self.handler is not None:
            value = self.handler(request)
        elif self.responses:
            value = self.responses.pop(0)
        else:
            raise RuntimeError("ScriptedLLMProvider ran out of responses")
        if isinstance(value, Exception):
            raise value
        return _to_response(value)

    @property
    def call_count(self) -> int:
        return len(self.requests)


class StaticBrowser(IBrowser):
    """Serves fixed HTML per URL; unknown URLs fail like an unreachable host."""

    def __init__(self, pages: Dict[str, str]):
        self.pages = pages
        self.visits: List[str] = []

    async def fetch_page(self, url: str) -> PageSnapshot:
        self.visits.append(url)
        if url not in self.pages:
            raise NetworkError(url, "net::ERR_NAME_NOT_RESOLVED")
        html = self.pages[url]
        return PageSnapshot(url=url, html=html, title=page_title(html), links=extract_links(html, url))
