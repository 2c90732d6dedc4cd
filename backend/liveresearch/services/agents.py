from __future__ import annotations

import json
import logging
import re
from typing import Any, AsyncIterator, Mapping, Optional

from pydantic import ValidationError

from liveresearch.providers.base import LLMAdapter, ProviderError, ProviderRuntimeConfig
from liveresearch.providers.search_adapter import PageFetcher
from liveresearch.schemas.research import PageExtraction, SearchResult
from liveresearch.services.context import RunContext, estimate_tokens
from liveresearch.services.prompt_builder import PromptBuilder, render_item
from liveresearch.services.ranking import Vote

logger = logging.getLogger(__name__)


class LLMClient:
    """LLM adapter bound to one model config, charging every call to the run ledger."""

    def __init__(
        self,
        adapter: LLMAdapter,
        cfg: ProviderRuntimeConfig,
        cost_per_1k_in: float = 0.01,
        cost_per_1k_out: float = 0.03,
    ) -> None:
        self._adapter = adapter
        self._cfg = cfg
        self._cost_per_1k_in = cost_per_1k_in
        self._cost_per_1k_out = cost_per_1k_out

    async def complete(self, ctx: RunContext, messages: list[dict], stage: str) -> str:
        """Run one non-streaming call and record its cost."""

        ctx.check_cancelled()
        result = await self._adapter.generate(self._cfg, messages)
        token_in = result.token_in or estimate_tokens(_prompt_text(messages))
        token_out = result.token_out or estimate_tokens(result.content)
        self._charge(ctx, token_in, token_out, stage)
        return result.content

    async def stream(
        self, ctx: RunContext, messages: list[dict], stage: str
    ) -> AsyncIterator[str]:
        """Yield streamed fragments, recording the cost once the stream closes.

        A stream that fails or is abandoned part way is still charged for the
        text it produced.
        """

        ctx.check_cancelled()
        token_in: Optional[int] = None
        token_out: Optional[int] = None
        produced: list[str] = []
        try:
            async for chunk in self._adapter.stream(self._cfg, messages):
                if chunk.token_in is not None:
                    token_in = chunk.token_in
                if chunk.token_out is not None:
                    token_out = chunk.token_out
                if chunk.content:
                    produced.append(chunk.content)
                    yield chunk.content
                ctx.check_cancelled()
        finally:
            if produced or token_in is not None or token_out is not None:
                self._charge(
                    ctx,
                    token_in or estimate_tokens(_prompt_text(messages)),
                    token_out or estimate_tokens("".join(produced)),
                    stage,
                )

    def _charge(self, ctx: RunContext, token_in: int, token_out: int, stage: str) -> None:
        amount_in = token_in / 1000.0 * self._cost_per_1k_in
        amount_out = token_out / 1000.0 * self._cost_per_1k_out
        ctx.add_cost(amount_in, amount_out, stage)


class SearchQueryGenerator:
    """Generate candidate web search queries for a question."""

    def __init__(self, llm: LLMClient, prompts: PromptBuilder) -> None:
        self._llm = llm
        self._prompts = prompts

    async def generate(self, ctx: RunContext, question: str, count: int) -> list[str]:
        content = await self._llm.complete(
            ctx, self._prompts.query_generation(question, count), stage="generate_queries"
        )
        queries = parse_string_list(content)
        return list(dict.fromkeys(queries))[:count]


class LLMComparator:
    """Pairwise judge for queries or search results backed by the LLM."""

    def __init__(
        self,
        llm: LLMClient,
        prompts: PromptBuilder,
        ctx: RunContext,
        kind: str = "search queries",
    ) -> None:
        self._llm = llm
        self._prompts = prompts
        self._ctx = ctx
        self._kind = kind

    async def compare(self, first: object, second: object, context: str) -> Vote:
        messages = self._prompts.pairwise_comparison(
            self._kind, render_item(first), render_item(second), context
        )
        content = await self._llm.complete(self._ctx, messages, stage=f"rank_{self._kind}")
        return Vote.parse(content)


class PageScanner:
    """Fetch a page and extract structured research notes from it."""

    def __init__(self, llm: LLMClient, fetcher: PageFetcher, prompts: PromptBuilder) -> None:
        self._llm = llm
        self._fetcher = fetcher
        self._prompts = prompts

    async def scan(
        self, ctx: RunContext, result: SearchResult, question: str
    ) -> Optional[PageExtraction]:
        """Return the extraction, or None when the page cannot be used."""

        try:
            page_text = await self._fetcher.fetch_text(result.url)
        except ProviderError as exc:
            logger.warning("Skipping page %s: %s", result.url, exc.message)
            return None
        ctx.check_cancelled()
        content = await self._llm.complete(
            ctx,
            self._prompts.page_extraction(question, result.url, page_text),
            stage="scan_pages",
        )
        payload = parse_json_object(content)
        if payload is None:
            logger.warning("Skipping page %s: extraction is not JSON", result.url)
            return None
        try:
            return PageExtraction.model_validate({**payload, "url": result.url})
        except ValidationError as exc:
            logger.warning("Skipping page %s: %s", result.url, exc.errors()[:1])
            return None


def parse_string_list(content: str) -> list[str]:
    """Read a JSON array of strings, falling back to one item per line."""

    raw = _strip_fences(content)
    start, end = raw.find("["), raw.rfind("]")
    if start != -1 and end > start:
        try:
            value = json.loads(raw[start : end + 1])
        except json.JSONDecodeError:
            value = None
        if isinstance(value, list):
            return [str(item).strip() for item in value if str(item).strip()]
    lines = [re.sub(r"^\s*(?:[-*]|\d+[.)])\s*", "", line) for line in raw.splitlines()]
    return [line.strip().strip('"') for line in lines if line.strip().strip('"')]


def parse_json_object(content: str) -> Optional[Mapping[str, Any]]:
    """Extract the first JSON object from model output, repairing common slips."""

    raw = _strip_fences(content)
    start, end = raw.find("{"), raw.rfind("}")
    if start == -1 or end <= start:
        return None
    candidate = raw[start : end + 1]
    for text in (candidate, _repair_json_object(candidate)):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, Mapping):
            return payload
    return None


def _strip_fences(content: str) -> str:
    raw = str(content or "").strip()
    if raw.startswith("```"):
        raw = re.sub(r"^```(?:json)?\s*", "", raw, flags=re.IGNORECASE)
        raw = re.sub(r"\s*```$", "", raw)
    return raw.strip()


def _repair_json_object(content: str) -> str:
    text = re.sub(r",\s*([}\]])", r"\1", content)
    return re.sub(r'([,{]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:', r'\1"\2":', text)


def _prompt_text(messages: list[dict]) -> str:
    return "\n".join(str(message.get("content", "")) for message in messages)
