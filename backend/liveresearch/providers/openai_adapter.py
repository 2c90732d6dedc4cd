from __future__ import annotations

from typing import Any, AsyncIterator, Optional

import httpx

from liveresearch.providers.base import (
    HTTPProviderAdapter,
    LLMResult,
    LLMStreamChunk,
    ProviderError,
    ProviderRuntimeConfig,
    parse_sse_line,
    require_api_key,
)


class OpenAIAdapter(HTTPProviderAdapter):
    """Adapter for OpenAI-compatible chat completion APIs."""

    def __init__(
        self, timeout_sec: float = 90, http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        super().__init__(timeout_sec=timeout_sec, http_client=http_client)

    async def generate(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        url = self._join_url(cfg.base_url, "/v1/chat/completions")
        payload = self._build_payload(cfg, messages, stream=False)
        data = await self._request_json("POST", url, headers=self._auth_headers(cfg), json=payload)
        choices = data.get("choices", [])
        if not choices:
            raise ProviderError("PROVIDER_PARSE_ERROR", "No choices returned by provider.")
        content = choices[0].get("message", {}).get("content")
        if not content:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned empty content.")
        return LLMResult(
            content=content,
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=self._get_usage_int(data, "prompt_tokens"),
            token_out=self._get_usage_int(data, "completion_tokens"),
        )

    async def stream(
        self, cfg: ProviderRuntimeConfig, messages: list[dict]
    ) -> AsyncIterator[LLMStreamChunk]:
        url = self._join_url(cfg.base_url, "/v1/chat/completions")
        payload = self._build_payload(cfg, messages, stream=True)
        async with self._open_stream(
            "POST", url, headers=self._auth_headers(cfg), json=payload
        ) as response:
            async for line in response.aiter_lines():
                data = parse_sse_line(line)
                if data is None:
                    continue
                for choice in data.get("choices") or []:
                    delta = (choice.get("delta") or {}).get("content")
                    if delta:
                        yield LLMStreamChunk(content=delta)
                if data.get("usage"):
                    yield LLMStreamChunk(
                        token_in=self._get_usage_int(data, "prompt_tokens"),
                        token_out=self._get_usage_int(data, "completion_tokens"),
                    )

    @staticmethod
    def _build_payload(
        cfg: ProviderRuntimeConfig, messages: list[dict], stream: bool
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": cfg.model_name, "messages": messages}
        if cfg.temperature is not None:
            payload["temperature"] = cfg.temperature
        if cfg.max_tokens is not None:
            payload["max_tokens"] = cfg.max_tokens
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    @staticmethod
    def _auth_headers(cfg: ProviderRuntimeConfig) -> dict[str, str]:
        api_key = require_api_key(cfg.api_key, "OpenAI")
        return {"Authorization": f"Bearer {api_key}"}

    @staticmethod
    def _join_url(base_url: Optional[str], path: str) -> str:
        if not base_url:
            raise ProviderError("PROVIDER_BASE_URL_MISSING", "Base URL is required for OpenAI.")
        base = base_url.rstrip("/")
        if base.endswith("/v1") and path.startswith("/v1/"):
            return base + path[3:]
        return base + path

    @staticmethod
    def _get_usage_int(data: dict[str, Any], key: str) -> Optional[int]:
        usage = data.get("usage") or {}
        value = usage.get(key)
        return int(value) if isinstance(value, int) else None
