from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from liveresearch.schemas.events import ProgressEvent
from liveresearch.schemas.research import ConversationMemory
from liveresearch.services.memory_service import build_cost_entries


class PipelineStage(str, Enum):
    """States of one conversational turn."""

    IDLE = "idle"
    GENERATING_QUERIES = "generating_queries"
    RANKING_QUERIES = "ranking_queries"
    SEARCHING_WEB = "searching_web"
    RANKING_RESULTS = "ranking_results"
    SCANNING_PAGES = "scanning_pages"
    SYNTHESIZING = "synthesizing"
    STREAMING_ANSWER = "streaming_answer"
    CHATTING = "chatting"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in {PipelineStage.COMPLETED, PipelineStage.ERROR}


class PipelineError(RuntimeError):
    """Fatal turn failure surfaced to the client as an error event."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class TurnCancelled(RuntimeError):
    """Raised at a stage boundary once the run has been cancelled."""


@dataclass
class RunContext:
    """Per-turn state threaded through every stage and adapter call.

    Holds the cancellation flag and the conversation whose cost ledger receives
    every token-cost increment recorded during the turn.
    """

    memory_id: str
    client_id: Optional[str] = None
    silent: bool = False
    memory: Optional[ConversationMemory] = None
    stage: PipelineStage = PipelineStage.IDLE
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    recorded_costs: list[float] = field(default_factory=list)
    events: list[ProgressEvent] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def finished(self) -> bool:
        """True once the turn reached a terminal stage or sent its terminal event."""

        if self.stage.is_terminal:
            return True
        return any(event.is_terminal for event in self.events)

    def cancel(self) -> None:
        self.cancel_event.set()

    def check_cancelled(self) -> None:
        """Raise ``TurnCancelled`` when the run should stop."""

        if self.cancel_event.is_set():
            raise TurnCancelled(f"Turn for {self.memory_id} was cancelled")

    def enter(self, stage: PipelineStage) -> None:
        """Move to the next stage, refusing once cancelled."""

        self.check_cancelled()
        self.stage = stage

    def add_cost(self, amount_in: float, amount_out: float, stage: Optional[str] = None) -> None:
        """Append an input/output cost pair to the conversation ledger."""

        entries = build_cost_entries(amount_in, amount_out, stage or self.stage.value)
        if self.memory is not None:
            self.memory.cost_ledger.extend(entries)
        self.recorded_costs.extend(entry.amount for entry in entries)

    def total_cost(self) -> float:
        if self.memory is not None:
            return self.memory.total_cost()
        return sum(self.recorded_costs)


def estimate_tokens(text: str) -> int:
    """Rough token count used when a provider reports no usage."""

    return max(1, len(text or "") // 4)
