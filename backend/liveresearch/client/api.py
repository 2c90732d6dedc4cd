from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

import httpx

from liveresearch.core.config import Settings


@dataclass
class ConversationOptions:
    """Per-turn tuning sent with a conversation request."""

    memory_id: Optional[str] = None
    number_of_select_queries: int = 7
    percent_of_top_queries_to_search: float = 0.25
    percent_of_top_results_to_scan: float = 0.25
    silent_mode: bool = False


class ResearchAPIClient:
    """HTTP client for the live research REST endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout_sec: float = 40,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_sec
        self._client = http_client

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None
    ) -> "ResearchAPIClient":
        return cls(
            settings.research_api_base_url,
            timeout_sec=settings.request_timeout_sec,
            http_client=http_client,
        )

    async def conversation(
        self,
        chat_log: Iterable[dict[str, Any]],
        client_id: str,
        options: Optional[ConversationOptions] = None,
    ) -> dict[str, Any]:
        """Start a turn; returns the server acknowledgement with the memory id."""

        options = options or ConversationOptions()
        payload: dict[str, Any] = {
            "chatLog": [_chat_entry(item) for item in chat_log],
            "wsClientId": client_id,
            "numberOfSelectQueries": options.number_of_select_queries,
            "percentOfTopQueriesToSearch": options.percent_of_top_queries_to_search,
            "percentOfTopResultsToScan": options.percent_of_top_results_to_scan,
            "silentMode": options.silent_mode,
        }
        if options.memory_id:
            payload["memoryId"] = options.memory_id
        response = await self._request("PUT", "/live_research_chat/", json=payload)
        response.raise_for_status()
        return response.json()

    async def get_chat_log(self, memory_id: str) -> dict[str, Any]:
        """Fetch a stored conversation; unknown ids yield an empty log."""

        response = await self._request("GET", f"/live_research_chat/{memory_id}")
        if response.status_code == 404:
            return {"chatLog": [], "totalCosts": 0}
        response.raise_for_status()
        return response.json()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self._base_url}{path}"
        if self._client is not None:
            return await self._client.request(method, url, timeout=self._timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.request(method, url, **kwargs)


def _chat_entry(item: dict[str, Any]) -> dict[str, Any]:
    text = item.get("message")
    if text is None:
        text = item.get("text", item.get("content", ""))
    return {"sender": item.get("sender", "user"), "message": text}
