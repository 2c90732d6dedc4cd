from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import AliasChoices, Field, field_validator

from liveresearch.schemas.common import APIModel
from liveresearch.utils.time_utils import utc_now

Sender = Literal["user", "assistant", "system"]
CostDirection = Literal["in", "out"]

_SENDER_ALIASES = {"bot": "assistant", "ai": "assistant", "human": "user"}


class ChatTurn(APIModel):
    """One message in a conversation."""

    sender: Sender
    text: str = Field(
        default="",
        validation_alias=AliasChoices("message", "text", "content"),
        serialization_alias="message",
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        validation_alias=AliasChoices("createdAt", "created_at", "timestamp"),
    )

    @field_validator("sender", mode="before")
    @classmethod
    def _normalize_sender(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return _SENDER_ALIASES.get(lowered, lowered)
        return value

    @field_validator("text", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        return "" if value is None else value


class CostEntry(APIModel):
    """A single token-cost increment."""

    direction: CostDirection
    amount: float = Field(ge=0)
    stage: str = "unknown"
    created_at: datetime = Field(default_factory=utc_now)


class SearchResult(APIModel):
    """A web page returned by the search provider."""

    title: str = ""
    url: str
    description: str = ""


class PageExtraction(APIModel):
    """Structured facts extracted from one scanned page."""

    url: str
    potential_sources_of_information: list[str] = Field(default_factory=list)
    potential_barrier_descriptions: list[str] = Field(default_factory=list)
    summary: str = ""
    how_this_is_relevant: str = ""
    relevance_score: float = 0.0


class TurnArtifacts(APIModel):
    """Intermediate outputs of one research pipeline turn."""

    question: str
    generated_queries: list[str] = Field(default_factory=list)
    ranked_queries: list[str] = Field(default_factory=list)
    search_results: list[SearchResult] = Field(default_factory=list)
    ranked_results: list[SearchResult] = Field(default_factory=list)
    page_extractions: list[PageExtraction] = Field(default_factory=list)


class ConversationMemory(APIModel):
    """Durable state of one conversation, stored under its memory key."""

    memory_id: str
    chat_log: list[ChatTurn] = Field(default_factory=list)
    artifacts: list[TurnArtifacts] = Field(default_factory=list)
    cost_ledger: list[CostEntry] = Field(default_factory=list)
    seen_urls: list[str] = Field(default_factory=list)
    persist: bool = True
    version: int = Field(default=0, exclude=True)

    def total_cost(self) -> float:
        """Sum every cost increment recorded for this conversation."""

        return sum(entry.amount for entry in self.cost_ledger)


class ResearchTurnRequest(APIModel):
    """Client request that starts or continues a conversational turn."""

    chat_log: list[ChatTurn] = Field(default_factory=list)
    ws_client_id: Optional[str] = Field(default=None)
    memory_id: Optional[str] = Field(default=None, max_length=200)
    number_of_select_queries: Optional[int] = Field(default=None, ge=1, le=50)
    percent_of_top_queries_to_search: Optional[float] = Field(default=None, gt=0, le=1)
    percent_of_top_results_to_scan: Optional[float] = Field(default=None, gt=0, le=1)
    silent_mode: bool = False


class ChatLogResponse(APIModel):
    """Retrieval payload for a stored conversation."""

    chat_log: list[ChatTurn]
    total_costs: float


class TurnStartedResponse(APIModel):
    """Acknowledgement returned when a turn is scheduled."""

    memory_id: str
    status: str = "started"
    chat_log: list[ChatTurn] = Field(default_factory=list)
