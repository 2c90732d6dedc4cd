from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from liveresearch.api import research as research_api
from liveresearch.api import websocket as websocket_api
from liveresearch.core.config import Settings, get_settings
from liveresearch.core.logging import setup_logging
from liveresearch.db.base import create_engine, create_sessionmaker, init_db
from liveresearch.providers.base import LLMAdapter, MockAdapter, ProviderRuntimeConfig
from liveresearch.providers.openai_adapter import OpenAIAdapter
from liveresearch.providers.search_adapter import GoogleSearchAdapter, PageFetcher, SearchAdapter
from liveresearch.services.agents import LLMClient
from liveresearch.services.bridge import create_bridge
from liveresearch.services.memory_service import create_memory_service
from liveresearch.services.orchestrator import ResearchOrchestrator
from liveresearch.services.policy_research import PolicyResearchService
from liveresearch.services.runner import RunnerManager


def build_llm_client(settings: Settings, adapter: Optional[LLMAdapter] = None) -> LLMClient:
    """Create the LLM client for the configured provider."""

    if adapter is None:
        if settings.llm_provider == "mock":
            adapter = MockAdapter()
        else:
            adapter = OpenAIAdapter(timeout_sec=settings.llm_timeout_sec)
    cfg = ProviderRuntimeConfig(
        provider=settings.llm_provider,
        model_name=settings.llm_model,
        base_url=settings.llm_base_url,
        api_key=settings.llm_api_key or None,
    )
    return LLMClient(
        adapter,
        cfg,
        cost_per_1k_in=settings.llm_cost_per_1k_in,
        cost_per_1k_out=settings.llm_cost_per_1k_out,
    )


def create_app(
    llm_adapter: Optional[LLMAdapter] = None,
    search_adapter: Optional[SearchAdapter] = None,
    page_fetcher: Optional[PageFetcher] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = get_settings()
    setup_logging(settings.log_level)

    engine = create_engine(settings.db_url)
    sessionmaker = create_sessionmaker(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(engine)
        yield
        await app.state.runner_manager.shutdown()
        await engine.dispose()

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.connection_manager = websocket_api.ConnectionManager()
    app.state.memory_service = create_memory_service(sessionmaker, settings)
    app.state.orchestrator = ResearchOrchestrator(
        app.state.memory_service,
        app.state.connection_manager,
        build_llm_client(settings, llm_adapter),
        search_adapter
        or GoogleSearchAdapter(
            settings.search_base_url,
            settings.search_api_key or None,
            settings.search_cx_id or None,
            results_per_query=settings.search_results_per_query,
        ),
        page_fetcher
        or PageFetcher(
            max_chars=settings.page_max_chars, timeout_sec=settings.page_fetch_timeout_sec
        ),
        settings,
    )
    app.state.runner_manager = RunnerManager(app.state.orchestrator)
    app.state.bridge = create_bridge(
        app.state.memory_service, settings, runner=app.state.runner_manager
    )
    app.state.policy_service = PolicyResearchService(
        app.state.memory_service,
        app.state.orchestrator,
        app.state.bridge,
        app.state.connection_manager,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(research_api.live_router)
    app.include_router(research_api.policy_router)
    app.include_router(research_api.health_router)
    app.include_router(websocket_api.router)

    return app


app = create_app()
