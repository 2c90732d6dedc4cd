from __future__ import annotations

import re
from typing import Optional, Protocol

import httpx
from bs4 import BeautifulSoup

from liveresearch.providers.base import HTTPProviderAdapter, ProviderError, require_api_key
from liveresearch.schemas.research import SearchResult


class SearchAdapter(Protocol):
    """Adapter interface for web search providers."""

    async def search(self, query: str) -> list[SearchResult]:
        """Return result pages for a query string."""


class GoogleSearchAdapter(HTTPProviderAdapter):
    """Adapter for the Google Custom Search JSON API."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        cx_id: Optional[str],
        results_per_query: int = 10,
        timeout_sec: float = 30,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(timeout_sec=timeout_sec, http_client=http_client)
        self._base_url = base_url
        self._api_key = api_key
        self._cx_id = cx_id
        self._results_per_query = max(1, min(results_per_query, 10))

    async def search(self, query: str) -> list[SearchResult]:
        if not self._cx_id:
            raise ProviderError("SEARCH_CX_MISSING", "Search engine id is required.")
        params = {
            "key": require_api_key(self._api_key, "Google search"),
            "cx": self._cx_id,
            "q": query,
            "num": self._results_per_query,
        }
        data = await self._request_json("GET", self._base_url, params=params)
        results: list[SearchResult] = []
        for item in data.get("items") or []:
            url = item.get("link")
            if not url:
                continue
            results.append(
                SearchResult(
                    title=item.get("title") or "",
                    url=url,
                    description=item.get("snippet") or "",
                )
            )
        return results


class PageFetcher(HTTPProviderAdapter):
    """Fetch a web page and reduce it to readable text."""

    _STRIP_TAGS = ("script", "style", "nav", "footer", "header", "aside", "iframe", "noscript")

    def __init__(
        self,
        max_chars: int = 20000,
        timeout_sec: float = 20,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(timeout_sec=timeout_sec, http_client=http_client)
        self._max_chars = max_chars

    async def fetch_text(self, url: str) -> str:
        """Return the visible text of a page, clamped to the configured size."""

        response = await self._request(
            "GET", url, headers={"User-Agent": "Mozilla/5.0 (live-research)"}
        )
        content_type = response.headers.get("content-type", "")
        if "html" not in content_type and "text" not in content_type:
            raise ProviderError("PAGE_UNSUPPORTED", f"Unsupported content type: {content_type}")
        text = html_to_text(response.text)
        if not text:
            raise ProviderError("PAGE_EMPTY", "Page has no readable text.")
        return text[: self._max_chars]


def html_to_text(html: str) -> str:
    """Extract the main readable text from an HTML document."""

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(PageFetcher._STRIP_TAGS):
        tag.decompose()
    content = (
        soup.find("main")
        or soup.find("article")
        or soup.find("div", class_=re.compile(r"content|main-content|post-content|article"))
        or soup.body
        or soup
    )
    text = content.get_text(separator=" ", strip=True)
    return re.sub(r"\s+", " ", text).strip()
