import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import asyncio
import json
import re
from typing import AsyncIterator, Optional

import httpx
import pytest

from liveresearch.core.config import Settings, get_settings
from liveresearch.db.base import create_engine, create_sessionmaker, init_db
from liveresearch.main import create_app
from liveresearch.providers.base import (
    LLMResult,
    LLMStreamChunk,
    ProviderError,
    ProviderRuntimeConfig,
)
from liveresearch.schemas.research import SearchResult
from liveresearch.services.agents import LLMClient
from liveresearch.services.memory_service import ConversationMemoryService

RESEARCH_ANSWER = (
    "Renewable energy comes from sources that are naturally replenished, such as sunlight, "
    "wind and water. See [the overview](https://example.com/q0/0) for details."
)
FOLLOWUP_ANSWER = (
    "Building on the earlier research, solar and wind are the fastest growing renewable "
    "sources and are now cheaper than new fossil generation in most markets."
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    db_path = tmp_path / "test_live_research.db"
    monkeypatch.setenv("DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("LLM_PROVIDER", "stub")
    monkeypatch.setenv("COST_BROADCAST_INTERVAL_SEC", "0.05")
    monkeypatch.setenv("BRIDGE_POLL_DELAYS_SEC", "0,0,0")
    monkeypatch.setenv("BRIDGE_COMPLETION_TIMEOUT_SEC", "10")
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
async def memory_service(settings) -> AsyncIterator[ConversationMemoryService]:
    engine = create_engine(settings.db_url)
    await init_db(engine)
    yield ConversationMemoryService(
        create_sessionmaker(engine),
        key_prefix=settings.memory_key_prefix,
        legacy_prefixes=settings.parsed_legacy_prefixes(),
    )
    await engine.dispose()


@pytest.fixture
def llm_adapter() -> "StubLLMAdapter":
    return StubLLMAdapter()


@pytest.fixture
def llm_client(llm_adapter) -> LLMClient:
    cfg = ProviderRuntimeConfig(provider="stub", model_name="stub-model")
    return LLMClient(llm_adapter, cfg, cost_per_1k_in=0.01, cost_per_1k_out=0.03)


@pytest.fixture
def app(settings):
    app = create_app(
        llm_adapter=StubLLMAdapter(),
        search_adapter=StubSearchAdapter(),
        page_fetcher=StubPageFetcher(),
    )
    return app


@pytest.fixture
async def client(app):
    await init_db(app.state.engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.runner_manager.shutdown()
    await app.state.engine.dispose()


class StubLLMAdapter:
    """Adapter stub answering each prompt kind with canned output."""

    def __init__(
        self,
        query_count: Optional[int] = None,
        vote: str = "First",
        delay: float = 0.0,
        fail_after: Optional[int] = None,
    ) -> None:
        self.query_count = query_count
        self.vote = vote
        self.delay = delay
        self.fail_after = fail_after
        self.calls: list[str] = []

    async def generate(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        system = messages[0]["content"]
        if system.startswith("You generate web search queries"):
            self.calls.append("queries")
            match = re.search(r"Return exactly (\d+)", system)
            count = self.query_count if self.query_count is not None else int(match.group(1))
            content = json.dumps([f"renewable energy query {index}" for index in range(count)])
        elif system.startswith("You compare two"):
            self.calls.append("compare")
            content = self.vote
        elif system.startswith("Act as a policy research assistant"):
            self.calls.append("scan")
            content = json.dumps(
                {
                    "potentialSourcesOfInformation": ["Energy agency report"],
                    "potentialBarrierDescriptions": ["Grid access"],
                    "summary": "Page summary.",
                    "howThisIsRelevant": "Explains renewable sources.",
                    "relevanceScore": 8,
                }
            )
        else:
            self.calls.append("other")
            content = RESEARCH_ANSWER
        return LLMResult(
            content=content,
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=100,
            token_out=10,
        )

    async def stream(self, cfg: ProviderRuntimeConfig, messages: list[dict]):
        system = messages[0]["content"]
        if system.startswith("You are a policy research assistant. Continue"):
            self.calls.append("chat")
            answer = FOLLOWUP_ANSWER
        else:
            self.calls.append("synthesize")
            answer = RESEARCH_ANSWER
        for index, word in enumerate(answer.split(" ")):
            if self.fail_after is not None and index == self.fail_after:
                raise ProviderError("PROVIDER_CONNECTION_ERROR", "Provider connection failed.")
            if self.delay:
                await asyncio.sleep(self.delay)
            yield LLMStreamChunk(content=word + " ")
        yield LLMStreamChunk(token_in=500, token_out=50)


class StubSearchAdapter:
    """Search stub returning three pages per query plus one shared page."""

    def __init__(self) -> None:
        self.queries: list[str] = []

    async def search(self, query: str) -> list[SearchResult]:
        self.queries.append(query)
        slug = query.replace(" ", "-")
        results = [
            SearchResult(
                title=f"{query} result {index}",
                url=f"https://example.com/{slug}/{index}",
                description=f"About {query}",
            )
            for index in range(3)
        ]
        results.append(
            SearchResult(title="Shared page", url="https://example.com/shared/", description="")
        )
        return results


class StubPageFetcher:
    """Fetcher stub; URLs containing ``broken`` fail like an unreachable page."""

    def __init__(self) -> None:
        self.urls: list[str] = []

    async def fetch_text(self, url: str) -> str:
        self.urls.append(url)
        if "broken" in url:
            raise ProviderError("PROVIDER_CONNECTION_ERROR", "Provider connection failed.")
        return f"Readable text of {url} about renewable energy."


class RecordingSink:
    """Event sink capturing every frame pushed to connected clients."""

    def __init__(self, connected: tuple[str, ...] = ("client-1",)) -> None:
        self.connected = set(connected)
        self.frames: list[tuple[str, dict]] = []

    def is_connected(self, client_id: str) -> bool:
        return client_id in self.connected

    async def send(self, client_id: str, payload: dict) -> bool:
        if client_id not in self.connected:
            return False
        self.frames.append((client_id, payload))
        return True
