from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status

from liveresearch.api.websocket import ConnectionManager
from liveresearch.core.config import Settings
from liveresearch.core.security import sanitize_text
from liveresearch.schemas.research import ChatLogResponse, ResearchTurnRequest, TurnStartedResponse
from liveresearch.services.memory_service import (
    ConversationMemoryService,
    full_cost,
    get_memory_service,
)
from liveresearch.services.orchestrator import TurnRequest
from liveresearch.services.policy_research import PolicyResearchService
from liveresearch.services.runner import RunnerManager, get_runner_manager

live_router = APIRouter(prefix="/api/live_research_chat", tags=["live_research"])
policy_router = APIRouter(prefix="/api/policy_research", tags=["policy_research"])
health_router = APIRouter(prefix="/api", tags=["health"])

MAX_MESSAGE_LEN = 20000


def get_app_settings(request: Request) -> Settings:
    """Dependency to access the settings the app was built with."""

    return request.app.state.settings


def get_http_connection_manager(request: Request) -> ConnectionManager:
    """Dependency to access the connection manager from an HTTP scope."""

    return request.app.state.connection_manager


def get_policy_service(request: Request) -> PolicyResearchService:
    """Dependency to access the policy research assistant."""

    return request.app.state.policy_service


@live_router.put("/")
async def start_live_research(
    payload: ResearchTurnRequest,
    runner: RunnerManager = Depends(get_runner_manager),
    memory_service: ConversationMemoryService = Depends(get_memory_service),
    connections: ConnectionManager = Depends(get_http_connection_manager),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    """Start a research or follow-up turn in the background."""

    turn = _build_turn_request(payload, connections, settings)
    existing = await memory_service.load(turn.memory_id)
    await runner.start_turn(turn)
    return _started(turn, existing.chat_log if existing else [])


@live_router.get("/{memory_id}")
async def get_live_research(
    memory_id: str,
    memory_service: ConversationMemoryService = Depends(get_memory_service),
) -> dict:
    """Return the stored chat log and total spend of a conversation."""

    return await _chat_log(memory_id, memory_service)


@policy_router.put("/")
async def start_policy_research(
    payload: ResearchTurnRequest,
    runner: RunnerManager = Depends(get_runner_manager),
    memory_service: ConversationMemoryService = Depends(get_memory_service),
    connections: ConnectionManager = Depends(get_http_connection_manager),
    settings: Settings = Depends(get_app_settings),
    policy_service: PolicyResearchService = Depends(get_policy_service),
) -> dict:
    """Start a policy research turn in the background."""

    turn = _build_turn_request(payload, connections, settings)
    existing = await memory_service.load(turn.memory_id)
    await runner.start_turn(turn, runner=policy_service)
    return _started(turn, existing.chat_log if existing else [])


@policy_router.get("/{memory_id}")
async def get_policy_research(
    memory_id: str,
    memory_service: ConversationMemoryService = Depends(get_memory_service),
) -> dict:
    """Return the stored chat log and total spend of a policy conversation."""

    return await _chat_log(memory_id, memory_service)


@health_router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


def _build_turn_request(
    payload: ResearchTurnRequest, connections: ConnectionManager, settings: Settings
) -> TurnRequest:
    if not payload.silent_mode:
        if not payload.ws_client_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="wsClientId is required"
            )
        if not connections.is_connected(payload.ws_client_id):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="wsClientId is not a live connection",
            )
    if not payload.chat_log:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="chatLog is empty")

    chat_log = [
        turn.model_copy(update={"text": sanitize_text(turn.text, MAX_MESSAGE_LEN)})
        for turn in payload.chat_log
    ]
    return TurnRequest(
        memory_id=payload.memory_id or uuid.uuid4().hex,
        chat_log=chat_log,
        client_id=payload.ws_client_id,
        number_of_queries=payload.number_of_select_queries or settings.default_number_of_queries,
        percent_queries_to_search=(
            payload.percent_of_top_queries_to_search or settings.default_percent_queries_to_search
        ),
        percent_results_to_scan=(
            payload.percent_of_top_results_to_scan or settings.default_percent_results_to_scan
        ),
        silent=payload.silent_mode,
    )


def _started(turn: TurnRequest, chat_log: list) -> dict:
    return TurnStartedResponse(memory_id=turn.memory_id, chat_log=chat_log).to_wire()


async def _chat_log(memory_id: str, memory_service: ConversationMemoryService) -> dict:
    memory = await memory_service.load(memory_id)
    if memory is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Memory not found")
    return ChatLogResponse(chat_log=memory.chat_log, total_costs=full_cost(memory)).to_wire()
