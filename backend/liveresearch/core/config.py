from __future__ import annotations

from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = Field(default="dev", alias="APP_ENV")
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=5029, alias="APP_PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    # NOTE: Keep as string to avoid pydantic-settings JSON-decoding complex types from .env.
    cors_origins: str = Field(
        default="http://localhost:2990,http://localhost:3000,http://127.0.0.1:3000",
        alias="CORS_ORIGINS",
    )
    db_url: str = Field(default="sqlite+aiosqlite:///./live_research.db", alias="DB_URL")

    memory_key_prefix: str = Field(default="ps-chatbot-memory", alias="MEMORY_KEY_PREFIX")
    legacy_memory_key_prefixes: str = Field(
        default="live-research-memory,policy-research-memory",
        alias="LEGACY_MEMORY_KEY_PREFIXES",
    )

    llm_provider: str = Field(default="openai", alias="LLM_PROVIDER")
    llm_base_url: str = Field(default="https://api.openai.com", alias="LLM_BASE_URL")
    llm_api_key: str = Field(default="", alias="LLM_API_KEY")
    llm_model: str = Field(default="gpt-4o-mini", alias="LLM_MODEL")
    llm_timeout_sec: float = Field(default=90, alias="LLM_TIMEOUT_SEC")
    llm_cost_per_1k_in: float = Field(default=0.01, alias="LLM_COST_PER_1K_IN")
    llm_cost_per_1k_out: float = Field(default=0.03, alias="LLM_COST_PER_1K_OUT")

    search_base_url: str = Field(
        default="https://www.googleapis.com/customsearch/v1", alias="SEARCH_BASE_URL"
    )
    search_api_key: str = Field(default="", alias="SEARCH_API_KEY")
    search_cx_id: str = Field(default="", alias="SEARCH_CX_ID")
    search_results_per_query: int = Field(default=10, alias="SEARCH_RESULTS_PER_QUERY")

    page_fetch_timeout_sec: float = Field(default=20, alias="PAGE_FETCH_TIMEOUT_SEC")
    page_max_chars: int = Field(default=20000, alias="PAGE_MAX_CHARS")

    default_number_of_queries: int = Field(default=7, alias="DEFAULT_NUMBER_OF_QUERIES")
    default_percent_queries_to_search: float = Field(
        default=0.25, alias="DEFAULT_PERCENT_QUERIES_TO_SEARCH"
    )
    default_percent_results_to_scan: float = Field(
        default=0.25, alias="DEFAULT_PERCENT_RESULTS_TO_SCAN"
    )
    ranking_budget_multiplier: int = Field(default=10, alias="RANKING_BUDGET_MULTIPLIER")
    ranking_convergence_window: int = Field(default=0, alias="RANKING_CONVERGENCE_WINDOW")
    max_parallel_searches: int = Field(default=4, alias="MAX_PARALLEL_SEARCHES")
    max_parallel_scans: int = Field(default=4, alias="MAX_PARALLEL_SCANS")
    cost_broadcast_interval_sec: float = Field(default=1.0, alias="COST_BROADCAST_INTERVAL_SEC")

    research_api_base_url: str = Field(
        default="http://localhost:5029/api", alias="RESEARCH_API_BASE_URL"
    )
    research_ws_url: str = Field(default="ws://localhost:5029/ws", alias="RESEARCH_WS_URL")
    request_timeout_sec: float = Field(default=40, alias="REQUEST_TIMEOUT_SEC")
    ws_max_reconnect_attempts: int = Field(default=5, alias="WS_MAX_RECONNECT_ATTEMPTS")
    ws_reconnect_base_delay_sec: float = Field(default=1.0, alias="WS_RECONNECT_BASE_DELAY_SEC")
    ws_handshake_timeout_sec: float = Field(default=10, alias="WS_HANDSHAKE_TIMEOUT_SEC")

    bridge_target_url: str = Field(
        default="http://localhost:5029/api/live_research_chat/", alias="BRIDGE_TARGET_URL"
    )
    bridge_poll_delays_sec: str = Field(default="5,10,15", alias="BRIDGE_POLL_DELAYS_SEC")
    bridge_min_response_chars: int = Field(default=100, alias="BRIDGE_MIN_RESPONSE_CHARS")
    bridge_completion_timeout_sec: float = Field(
        default=150, alias="BRIDGE_COMPLETION_TIMEOUT_SEC"
    )

    model_config = SettingsConfigDict(env_file=(".env", "backend/.env"), extra="ignore")

    def parsed_cors_origins(self) -> List[str]:
        """Return CORS origins parsed from env var.

        Supports comma-delimited strings (recommended) and JSON list strings.
        """

        return _parse_list(self.cors_origins)

    def parsed_legacy_prefixes(self) -> List[str]:
        """Return legacy memory key prefixes in lookup order."""

        return _parse_list(self.legacy_memory_key_prefixes)

    def parsed_bridge_poll_delays(self) -> List[float]:
        """Return the bridge wait schedule in seconds, one entry per attempt."""

        delays: list[float] = []
        for item in _parse_list(self.bridge_poll_delays_sec):
            try:
                delays.append(max(float(item), 0.0))
            except ValueError:
                continue
        return delays or [5.0, 10.0, 15.0]


def _parse_list(raw_value: str) -> List[str]:
    raw = (raw_value or "").strip()
    if not raw:
        return []
    if raw.startswith("["):
        try:
            import json

            value: Any = json.loads(raw)
            if isinstance(value, list):
                items = [str(item).strip() for item in value]
                return [item for item in items if item]
        except Exception:  # noqa: BLE001
            pass
    return [item.strip() for item in raw.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
