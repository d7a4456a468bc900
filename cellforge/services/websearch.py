"""Web-search collaborator used to ground generations in sources."""

import logging
from abc import ABC, abstractmethod

import httpx

from cellforge.core.config import settings
from cellforge.core.exceptions import WebSearchError
from cellforge.services.generation.types import SourceSnippet

logger = logging.getLogger(__name__)


class WebSearchClient(ABC):
    @abstractmethod
    async def search(self, query: str, max_results: int = 5) -> list[SourceSnippet]:
        """Return up to ``max_results`` snippets for ``query``."""

    async def aclose(self) -> None:
        return None


class SerperSearchClient(WebSearchClient):
    """Google results through the Serper API."""

    def __init__(
        self,
        api_key: str | None = None,
        url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ):
        self.api_key = api_key or settings.SERPER_API_KEY
        self.url = url or settings.WEBSEARCH_URL
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=5.0))

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str, max_results: int = 5) -> list[SourceSnippet]:
        if not self.api_key:
            raise WebSearchError("SERPER_API_KEY is not configured")
        query = query.strip()
        if not query:
            return []

        try:
            response = await self.client.post(
                self.url,
                headers={"X-API-KEY": self.api_key, "Content-Type": "application/json"},
                json={"q": query[:2048], "num": max_results},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise WebSearchError(f"Web search failed: {e}", original_error=e) from e

        snippets = []
        for item in data.get("organic", [])[:max_results]:
            link = item.get("link")
            text = item.get("snippet")
            if link and text:
                snippets.append(SourceSnippet(url=link, text=text, title=item.get("title")))
        logger.debug(f"[WebSearch] {len(snippets)} sources for query {query[:60]!r}")
        return snippets

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
