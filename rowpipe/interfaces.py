from abc import ABC, abstractmethod
from typing import Any, List, Optional, TYPE_CHECKING

from .domain import FetchResponse, ModelRequest, ModelResponse, PageSnapshot, SearchHit

if TYPE_CHECKING:
    from .pipeline.artifacts import ArtifactEvent


# =============================================================================
# Model access
# =============================================================================

class ILLMProvider(ABC):
    """Anything that can answer a chat-completion request."""

    @abstractmethod
    async def complete(self, request: ModelRequest, cache_salt: str = "") -> ModelResponse:
        """
        Run one chat completion.

        Args:
            request: Model, ordered messages and generation options
            cache_salt: Distinguishes otherwise identical requests (candidates)

        Returns:
            ModelResponse with text and any generated media
        """
        pass


# =============================================================================
# Shared services
# =============================================================================

class ICache(ABC):
    """Key-value store for responses and fetched pages."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        pass


class IFetcher(ABC):
    """Plain HTTP GET."""

    @abstractmethod
    async def fetch(self, url: str) -> FetchResponse:
        """
        Fetch a URL.

        Raises:
            NetworkError: transport failure after the fetcher's own retries
        """
        pass

    @abstractmethod
    async def fetch_bytes(self, url: str) -> bytes:
        pass


class IWebSearch(ABC):
    """Web search engine returning organic results."""

    @abstractmethod
    async def search(self, query: str, num: int = 5, gl: Optional[str] = None,
                     hl: Optional[str] = None) -> List[SearchHit]:
        """
        Run one search query.

        Raises:
            NetworkError: transport failure or a non-2xx answer
        """
        pass


class IBrowser(ABC):
    """Renders pages in a real browser, bounded by its own page pool."""

    @abstractmethod
    async def fetch_page(self, url: str) -> PageSnapshot:
        pass


class IArtifactWriter(ABC):
    """Receives artifact events announced by the core."""

    @abstractmethod
    async def emit(self, event: "ArtifactEvent") -> Optional[str]:
        """
        Persist one artifact.

        Returns:
            The location the artifact was written to, if any
        """
        pass
