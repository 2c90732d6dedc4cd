from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol, Sequence, TypeVar
from urllib.parse import urldefrag

from liveresearch.core.config import Settings
from liveresearch.providers.base import ProviderError
from liveresearch.providers.search_adapter import PageFetcher, SearchAdapter
from liveresearch.schemas.events import ProgressEvent
from liveresearch.schemas.research import (
    ChatTurn,
    ConversationMemory,
    PageExtraction,
    SearchResult,
    TurnArtifacts,
)
from liveresearch.services.agents import LLMClient, LLMComparator, PageScanner, SearchQueryGenerator
from liveresearch.services.context import PipelineError, PipelineStage, RunContext, TurnCancelled
from liveresearch.services.memory_service import ConversationMemoryService, MemoryConflictError
from liveresearch.services.prompt_builder import PromptBuilder
from liveresearch.services.ranking import PairwiseRanker, select_top_fraction

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class EventSink(Protocol):
    """Outbound channel for progress events, keyed by client id."""

    def is_connected(self, client_id: str) -> bool:
        """Return True while the client has a live connection."""

    async def send(self, client_id: str, payload: dict) -> bool:
        """Push one frame; return False when the client is gone."""


@dataclass
class TurnRequest:
    """Validated input of one conversational turn."""

    memory_id: str
    chat_log: list[ChatTurn]
    client_id: Optional[str] = None
    number_of_queries: int = 7
    percent_queries_to_search: float = 0.25
    percent_results_to_scan: float = 0.25
    silent: bool = False


class ResearchOrchestrator:
    """Run one conversational turn: the research pipeline or a follow-up chat.

    A turn whose merged history holds a single message runs the full pipeline
    (generate, rank, search, rank, scan, synthesize). Longer histories stream a
    direct answer conditioned on the whole conversation. Stages run strictly in
    sequence and emit progress events in stage order; only the search and scan
    fan-outs run concurrently, each bounded by a semaphore.
    """

    def __init__(
        self,
        memory_service: ConversationMemoryService,
        sink: EventSink,
        llm: LLMClient,
        search_adapter: SearchAdapter,
        page_fetcher: PageFetcher,
        settings: Settings,
        prompts: Optional[PromptBuilder] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._memory_service = memory_service
        self._sink = sink
        self._llm = llm
        self._search_adapter = search_adapter
        self._prompts = prompts or PromptBuilder(max_page_chars=settings.page_max_chars)
        self._settings = settings
        self._ranker = PairwiseRanker(
            rng=rng, convergence_window=settings.ranking_convergence_window
        )
        self._query_generator = SearchQueryGenerator(llm, self._prompts)
        self._scanner = PageScanner(llm, page_fetcher, self._prompts)

    async def run_turn(self, request: TurnRequest, ctx: RunContext) -> ConversationMemory:
        """Execute one turn against the conversation named by ``request.memory_id``."""

        async with self._memory_service.lock(request.memory_id):
            memory = await self._memory_service.load_or_create(request.memory_id)
            merge_chat_log(memory, request.chat_log)
            ctx.memory = memory
            broadcaster = asyncio.create_task(self._broadcast_costs(request, ctx))
            try:
                self._validate(request, memory)
                if len(memory.chat_log) == 1:
                    await self._run_pipeline(request, ctx, memory)
                else:
                    await self._run_chat(request, ctx, memory)
                ctx.stage = PipelineStage.COMPLETED
            except TurnCancelled:
                logger.info("Turn for %s cancelled during %s", request.memory_id, ctx.stage.value)
                ctx.stage = PipelineStage.ERROR
            except PipelineError as exc:
                ctx.stage = PipelineStage.ERROR
                logger.error("Turn for %s failed: %s", request.memory_id, exc.message)
                await self._emit(request, ctx, ProgressEvent.error(exc.message, exc.code))
            except ProviderError as exc:
                ctx.stage = PipelineStage.ERROR
                logger.error("Provider failure in turn %s: %s", request.memory_id, exc.message)
                await self._emit(request, ctx, ProgressEvent.error(exc.message, exc.code))
            except Exception:  # noqa: BLE001
                ctx.stage = PipelineStage.ERROR
                logger.exception("Turn for %s crashed", request.memory_id)
                await self._emit(
                    request, ctx, ProgressEvent.error("Research turn failed.", "PIPELINE_FAILED")
                )
            finally:
                broadcaster.cancel()
                await asyncio.gather(broadcaster, return_exceptions=True)
                try:
                    await self._memory_service.save(memory)
                except MemoryConflictError as exc:
                    logger.error("Could not persist turn for %s: %s", request.memory_id, exc)
        return memory

    def _validate(self, request: TurnRequest, memory: ConversationMemory) -> None:
        if not request.silent and not request.client_id:
            raise PipelineError("CLIENT_ID_REQUIRED", "A live client connection is required.")
        if not memory.chat_log:
            raise PipelineError("EMPTY_CHAT_LOG", "The chat log is empty.")
        if memory.chat_log[-1].sender != "user" or not memory.chat_log[-1].text.strip():
            raise PipelineError("NO_QUESTION", "The last chat message must be a user question.")

    async def _run_pipeline(
        self, request: TurnRequest, ctx: RunContext, memory: ConversationMemory
    ) -> None:
        question = memory.chat_log[-1].text.strip()
        artifacts = TurnArtifacts(question=question)
        memory.artifacts.append(artifacts)
        multiplier = self._settings.ranking_budget_multiplier

        async def progress(message: str) -> None:
            await self._emit(request, ctx, ProgressEvent.agent_update(message))

        ctx.enter(PipelineStage.GENERATING_QUERIES)
        await self._emit(request, ctx, ProgressEvent.agent_start("Generate search queries"))
        queries = await self._query_generator.generate(ctx, question, request.number_of_queries)
        artifacts.generated_queries = queries
        await self._emit(
            request, ctx, ProgressEvent.agent_completed(f"Generated {len(queries)} search queries")
        )

        ctx.enter(PipelineStage.RANKING_QUERIES)
        await self._emit(request, ctx, ProgressEvent.agent_start("Pairwise Ranking Search Queries"))
        ranked_queries = await self._ranker.rank(
            queries,
            LLMComparator(self._llm, self._prompts, ctx, kind="search queries"),
            question,
            len(queries) * multiplier,
            on_progress=progress,
        )
        artifacts.ranked_queries = ranked_queries.items
        await self._emit(request, ctx, ProgressEvent.agent_completed("Pairwise Ranking Completed"))
        selected_queries = select_top_fraction(
            ranked_queries.items, request.percent_queries_to_search
        )

        ctx.enter(PipelineStage.SEARCHING_WEB)
        await self._emit(request, ctx, ProgressEvent.agent_start("Searching the Web..."))
        results = await self._search_all(ctx, selected_queries, memory)
        artifacts.search_results = results
        await self._emit(
            request, ctx, ProgressEvent.agent_completed(f"Found {len(results)} Web Pages")
        )

        ctx.enter(PipelineStage.RANKING_RESULTS)
        await self._emit(request, ctx, ProgressEvent.agent_start("Pairwise Ranking Search Results"))
        ranked_results = await self._ranker.rank(
            results,
            LLMComparator(self._llm, self._prompts, ctx, kind="search results"),
            question,
            len(results) * multiplier,
            on_progress=progress,
        )
        artifacts.ranked_results = ranked_results.items
        await self._emit(request, ctx, ProgressEvent.agent_completed("Pairwise Ranking Completed"))
        to_scan = select_top_fraction(ranked_results.items, request.percent_results_to_scan)

        ctx.enter(PipelineStage.SCANNING_PAGES)
        await self._emit(request, ctx, ProgressEvent.agent_start("Scan and Research Web pages"))
        extractions = await self._scan_all(request, ctx, to_scan, question)
        artifacts.page_extractions = extractions
        await self._emit(
            request, ctx, ProgressEvent.agent_completed("Website Scanning Completed", is_final=True)
        )

        ctx.enter(PipelineStage.SYNTHESIZING)
        messages = self._prompts.summary(question, extractions)
        await self._stream_answer(request, ctx, memory, messages, stage="synthesize")

    async def _run_chat(
        self, request: TurnRequest, ctx: RunContext, memory: ConversationMemory
    ) -> None:
        ctx.enter(PipelineStage.CHATTING)
        messages = self._prompts.followup(memory.chat_log)
        await self._stream_answer(request, ctx, memory, messages, stage="chat")

    async def _stream_answer(
        self,
        request: TurnRequest,
        ctx: RunContext,
        memory: ConversationMemory,
        messages: list[dict],
        stage: str,
    ) -> str:
        ctx.enter(PipelineStage.STREAMING_ANSWER)
        parts: list[str] = []
        async for fragment in self._llm.stream(ctx, messages, stage=stage):
            parts.append(fragment)
            await self._emit(request, ctx, ProgressEvent.stream_response(fragment))
        await self._emit(request, ctx, ProgressEvent.stream_end())
        answer = "".join(parts)
        memory.chat_log.append(ChatTurn(sender="assistant", text=answer))
        return answer

    async def _search_all(
        self, ctx: RunContext, queries: Sequence[str], memory: ConversationMemory
    ) -> list[SearchResult]:
        async def search_one(query: str) -> list[SearchResult]:
            return await self._search_adapter.search(query)

        batches = await run_bounded(
            ctx, queries, search_one, self._settings.max_parallel_searches, label="search"
        )
        seen = set(memory.seen_urls)
        unique: list[SearchResult] = []
        for batch in batches:
            for result in batch:
                key = normalize_url(result.url)
                if key in seen:
                    continue
                seen.add(key)
                memory.seen_urls.append(key)
                unique.append(result)
        return unique

    async def _scan_all(
        self,
        request: TurnRequest,
        ctx: RunContext,
        results: Sequence[SearchResult],
        question: str,
    ) -> list[PageExtraction]:
        total = len(results)
        done = 0

        async def scan_one(result: SearchResult) -> Optional[PageExtraction]:
            nonlocal done
            extraction = await self._scanner.scan(ctx, result, question)
            done += 1
            await self._emit(
                request, ctx, ProgressEvent.agent_update(f"Scanned {done}/{total}: {result.url}")
            )
            return extraction

        scanned = await run_bounded(
            ctx, results, scan_one, self._settings.max_parallel_scans, label="scan"
        )
        return [item for item in scanned if item is not None]

    async def _broadcast_costs(self, request: TurnRequest, ctx: RunContext) -> None:
        interval = max(self._settings.cost_broadcast_interval_sec, 0.05)
        while not ctx.finished:
            await asyncio.sleep(interval)
            if ctx.finished or ctx.cancelled:
                return
            await self._emit(request, ctx, ProgressEvent.cost_update(round(ctx.total_cost(), 6)))

    async def _emit(self, request: TurnRequest, ctx: RunContext, event: ProgressEvent) -> None:
        ctx.events.append(event)
        if request.silent or not request.client_id or ctx.cancelled:
            return
        delivered = await self._sink.send(request.client_id, event.to_wire())
        if not delivered:
            logger.debug("Client %s gone, dropping %s", request.client_id, event.type.value)


async def run_bounded(
    ctx: RunContext,
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int,
    label: str,
) -> list[R]:
    """Run ``worker`` over items with at most ``limit`` in flight.

    Failed items are logged and skipped; results keep the input order.
    """

    semaphore = asyncio.Semaphore(max(limit, 1))

    async def run_one(item: T) -> R:
        async with semaphore:
            ctx.check_cancelled()
            return await worker(item)

    outcomes = await asyncio.gather(*(run_one(item) for item in items), return_exceptions=True)
    collected: list[R] = []
    for item, outcome in zip(items, outcomes):
        if isinstance(outcome, TurnCancelled):
            raise outcome
        if isinstance(outcome, BaseException):
            logger.warning("Skipping %s item %r: %s", label, item, outcome)
            continue
        collected.append(outcome)
    return collected


def merge_chat_log(memory: ConversationMemory, incoming: Sequence[ChatTurn]) -> None:
    """Adopt the client history when it extends the stored one.

    Otherwise only a trailing user message not already stored is appended.
    """

    stored = memory.chat_log
    if len(incoming) >= len(stored) and all(
        _same_turn(left, right) for left, right in zip(stored, incoming)
    ):
        memory.chat_log = list(incoming)
        return
    if incoming and incoming[-1].sender == "user":
        if not stored or not _same_turn(stored[-1], incoming[-1]):
            memory.chat_log.append(incoming[-1])


def _same_turn(left: ChatTurn, right: ChatTurn) -> bool:
    return left.sender == right.sender and left.text.strip() == right.text.strip()


def normalize_url(url: str) -> str:
    """Canonical form used for URL de-duplication."""

    base, _ = urldefrag(url.strip())
    return base.rstrip("/")
