from __future__ import annotations

import logging

from liveresearch.schemas.events import ProgressEvent
from liveresearch.schemas.research import ChatTurn, ConversationMemory
from liveresearch.services.bridge import RAGBridge
from liveresearch.services.context import RunContext
from liveresearch.services.memory_service import (
    ConversationMemoryService,
    MemoryConflictError,
    last_assistant_text,
)
from liveresearch.services.orchestrator import (
    EventSink,
    ResearchOrchestrator,
    TurnRequest,
    merge_chat_log,
)

logger = logging.getLogger(__name__)


def contextualized_question(question: str, data_context: str) -> str:
    """Embed retrieved data into the question handed to the research pipeline."""

    return (
        f'Based on the following data: "{data_context}", what are the current policies and '
        f"regulations relevant to this question: {question}? Focus on successful "
        "implementations and best practices that address the specific challenges "
        "identified in the data."
    )


class PolicyResearchService:
    """Secondary assistant combining bridged data with a live research run.

    First turns fetch raw data through the bridge, run a visible research
    pipeline on a sub-conversation whose question embeds that data, and answer
    with the data followed by the research summary. Follow-up turns are plain
    chat turns of the orchestrator.
    """

    def __init__(
        self,
        memory_service: ConversationMemoryService,
        orchestrator: ResearchOrchestrator,
        bridge: RAGBridge,
        sink: EventSink,
    ) -> None:
        self._memory_service = memory_service
        self._orchestrator = orchestrator
        self._bridge = bridge
        self._sink = sink

    async def run_turn(self, request: TurnRequest, ctx: RunContext) -> ConversationMemory:
        question = request.chat_log[-1].text.strip() if request.chat_log else ""
        if len(request.chat_log) != 1 or not question:
            return await self._orchestrator.run_turn(request, ctx)
        async with self._memory_service.lock(request.memory_id):
            existing = await self._memory_service.load(request.memory_id)
            if not (existing and existing.chat_log):
                return await self._research_turn(request, ctx, question)
        return await self._orchestrator.run_turn(request, ctx)

    async def _research_turn(
        self, request: TurnRequest, ctx: RunContext, question: str
    ) -> ConversationMemory:
        start = ProgressEvent.agent_start
        await self._emit(request, ctx, start("Analyzing data and researching policies..."))

        await self._emit(request, ctx, start("Retrieving data from database..."))
        data_context = await self._bridge.get_context(question, request.client_id)
        await self._emit(request, ctx, ProgressEvent.agent_completed("Data retrieved successfully"))
        ctx.check_cancelled()

        await self._emit(request, ctx, start("Researching current policies and regulations..."))
        research_question = contextualized_question(question, data_context)
        research_request = TurnRequest(
            memory_id=f"{request.memory_id}-research",
            chat_log=[ChatTurn(sender="user", text=research_question)],
            client_id=request.client_id,
            number_of_queries=request.number_of_queries,
            percent_queries_to_search=request.percent_queries_to_search,
            percent_results_to_scan=request.percent_results_to_scan,
            silent=request.silent,
        )
        research_ctx = RunContext(
            memory_id=research_request.memory_id,
            client_id=request.client_id,
            silent=request.silent,
            cancel_event=ctx.cancel_event,
        )
        research_memory = await self._orchestrator.run_turn(research_request, research_ctx)
        research_answer = last_assistant_text(research_memory) or ""
        await self._emit(request, ctx, ProgressEvent.agent_completed("Policy research completed"))

        await self._emit(request, ctx, ProgressEvent.agent_start("Preparing final results..."))
        combined = f"{data_context}\n\n{research_answer}".strip()
        memory = await self._persist(request, research_ctx, combined)
        await self._emit(request, ctx, ProgressEvent.chat_response(combined))
        await self._emit(request, ctx, ProgressEvent.agent_completed("Results ready"))
        return memory

    async def _persist(
        self, request: TurnRequest, research_ctx: RunContext, answer: str
    ) -> ConversationMemory:
        # Caller holds the conversation lock.
        memory = await self._memory_service.load_or_create(request.memory_id)
        merge_chat_log(memory, request.chat_log)
        memory.chat_log.append(ChatTurn(sender="assistant", text=answer))
        research_costs = research_ctx.memory.cost_ledger if research_ctx.memory else []
        for entry in research_costs:
            stage = f"policy_{entry.stage}"
            memory.cost_ledger.append(entry.model_copy(update={"stage": stage}))
        try:
            await self._memory_service.save(memory)
        except MemoryConflictError as exc:
            logger.error("Could not persist policy turn %s: %s", request.memory_id, exc)
        return memory

    async def _emit(self, request: TurnRequest, ctx: RunContext, event: ProgressEvent) -> None:
        ctx.events.append(event)
        if request.silent or not request.client_id or ctx.cancelled:
            return
        await self._sink.send(request.client_id, event.to_wire())
