import logging

import pytest
from conftest import StubPageFetcher

from liveresearch.core.logging import RedactionFilter
from liveresearch.core.security import redact_secrets, sanitize_text
from liveresearch.providers.base import (
    LLMResult,
    LLMStreamChunk,
    ProviderError,
    ProviderRuntimeConfig,
)
from liveresearch.schemas.research import ConversationMemory, SearchResult
from liveresearch.services.agents import (
    LLMClient,
    PageScanner,
    SearchQueryGenerator,
    parse_json_object,
    parse_string_list,
)
from liveresearch.services.context import RunContext, TurnCancelled
from liveresearch.services.prompt_builder import PromptBuilder


class FixedAdapter:
    def __init__(self, content: str, token_in=None, token_out=None) -> None:
        self.content = content
        self.token_in = token_in
        self.token_out = token_out

    async def generate(self, cfg, messages) -> LLMResult:
        return LLMResult(
            content=self.content,
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=self.token_in,
            token_out=self.token_out,
        )


def client_for(adapter) -> LLMClient:
    cfg = ProviderRuntimeConfig(provider="stub", model_name="m")
    return LLMClient(adapter, cfg, cost_per_1k_in=1.0, cost_per_1k_out=2.0)


class BrokenStreamAdapter:
    """Streams a few words, then drops the connection."""

    async def stream(self, cfg, messages):
        for word in ("one", "two", "three"):
            yield LLMStreamChunk(content=word + " ")
        raise ProviderError("PROVIDER_CONNECTION_ERROR", "Provider connection failed.")


@pytest.mark.anyio
async def test_failed_stream_is_still_charged():
    llm = client_for(BrokenStreamAdapter())
    ctx = RunContext(memory_id="m", memory=ConversationMemory(memory_id="m"))
    messages = [{"role": "user", "content": "q" * 400}]
    fragments = []

    with pytest.raises(ProviderError):
        async for fragment in llm.stream(ctx, messages, "synthesize"):
            fragments.append(fragment)

    assert fragments == ["one ", "two ", "three "]
    assert [entry.stage for entry in ctx.memory.cost_ledger] == ["synthesize", "synthesize"]
    assert ctx.recorded_costs == [pytest.approx(0.1), pytest.approx(0.006)]


@pytest.mark.anyio
async def test_abandoned_stream_is_charged_once():
    llm = client_for(BrokenStreamAdapter())
    ctx = RunContext(memory_id="m")

    stream = llm.stream(ctx, [{"role": "user", "content": "q"}], "chat")
    assert await stream.__anext__() == "one "
    await stream.aclose()

    assert len(ctx.recorded_costs) == 2


def test_parse_string_list_accepts_json_and_lines():
    assert parse_string_list('```json\n["a", " b ", ""]\n```') == ["a", "b"]
    assert parse_string_list("1. solar policy\n- \"wind tariffs\"\n") == [
        "solar policy",
        "wind tariffs",
    ]


def test_parse_json_object_repairs_common_slips():
    assert parse_json_object('Here: {"summary": "ok",}') == {"summary": "ok"}
    assert parse_json_object("{summary: \"ok\"}") == {"summary": "ok"}
    assert parse_json_object("no json here") is None


@pytest.mark.anyio
async def test_query_generator_dedups_and_truncates():
    llm = client_for(FixedAdapter('["a", "b", "a", "c", "d"]', token_in=1000, token_out=500))
    ctx = RunContext(memory_id="m")

    queries = await SearchQueryGenerator(llm, PromptBuilder()).generate(ctx, "question", 3)

    assert queries == ["a", "b", "c"]
    assert ctx.recorded_costs == [1.0, 1.0]


@pytest.mark.anyio
async def test_missing_usage_is_estimated():
    llm = client_for(FixedAdapter("x" * 400))
    ctx = RunContext(memory_id="m")

    await llm.complete(ctx, [{"role": "user", "content": "y" * 4000}], stage="test")

    assert ctx.recorded_costs == [pytest.approx(1.0), pytest.approx(0.2)]


@pytest.mark.anyio
async def test_cancelled_context_refuses_calls():
    llm = client_for(FixedAdapter("[]"))
    ctx = RunContext(memory_id="m")
    ctx.cancel()

    with pytest.raises(TurnCancelled):
        await llm.complete(ctx, [{"role": "user", "content": "q"}], stage="test")


@pytest.mark.anyio
async def test_page_scanner_skips_unusable_pages():
    fetcher = StubPageFetcher()
    good = PageScanner(
        client_for(FixedAdapter('{"summary": "s", "relevanceScore": 7}')),
        fetcher,
        PromptBuilder(),
    )
    prose = PageScanner(client_for(FixedAdapter("I cannot read that.")), fetcher, PromptBuilder())
    ctx = RunContext(memory_id="m")

    extraction = await good.scan(ctx, SearchResult(url="https://example.com/a"), "q")
    assert extraction.url == "https://example.com/a"
    assert extraction.relevance_score == 7

    assert await good.scan(ctx, SearchResult(url="https://broken.example.com"), "q") is None
    assert await prose.scan(ctx, SearchResult(url="https://example.com/b"), "q") is None


def test_secrets_are_redacted():
    assert redact_secrets("key sk-abcdef123456") == "key sk-***"
    assert redact_secrets("GET /v1?key=AIza123&q=x") == "GET /v1?key=***&q=x"
    assert sanitize_text("  hello world  ", 5) == "hello"


def test_redaction_filter_keeps_numeric_args():
    record = logging.LogRecord(
        "test", logging.INFO, __file__, 1, "retry in %.1fs with %s", (2.0, "sk-secret99"), None
    )

    RedactionFilter().filter(record)

    assert record.getMessage() == "retry in 2.0s with sk-***"
