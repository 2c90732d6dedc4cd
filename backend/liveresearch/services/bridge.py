from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Awaitable, Callable, Optional, Sequence

import httpx

from liveresearch.core.config import Settings
from liveresearch.services.memory_service import ConversationMemoryService, last_assistant_text
from liveresearch.services.runner import RunnerManager

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

RAW_DATA_PROMPT = (
    'For this question: "{question}", provide ONLY the raw data values, measurements, '
    "or facts. NO analysis, NO recommendations, NO policy suggestions, NO conclusions. "
    "Just the data."
)


def mint_memory_id(prefix: str = "live-research") -> str:
    """Return a fresh synthetic memory id such as ``live-research-<ms>-<hex>``."""

    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(5)}"


def degraded_context(question: str) -> str:
    """Placeholder returned when no usable answer could be retrieved."""

    return (
        f'No supporting data could be retrieved for "{question}". '
        "Continue with general research knowledge."
    )


class RAGBridge:
    """Obtain another assistant's answer for use as context in a second run.

    The hidden run is started through the sibling HTTP endpoint in silent mode.
    When the run executes in this process the runner's completion signal is
    awaited first; the conversation store is then read under every candidate
    key, retrying on the configured schedule until the answer is long enough.
    """

    def __init__(
        self,
        memory_service: ConversationMemoryService,
        target_url: str,
        poll_delays: Sequence[float] = (5.0, 10.0, 15.0),
        min_response_chars: int = 100,
        completion_timeout_sec: float = 150,
        request_timeout_sec: float = 40,
        runner: Optional[RunnerManager] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._memory_service = memory_service
        self._target_url = target_url
        self._poll_delays = list(poll_delays)
        self._min_chars = min_response_chars
        self._completion_timeout = completion_timeout_sec
        self._request_timeout = request_timeout_sec
        self._runner = runner
        self._client = http_client
        self._sleep = sleep

    def set_http_client(self, http_client: Optional[httpx.AsyncClient]) -> None:
        """Swap the HTTP client used to reach the sibling endpoint."""

        self._client = http_client

    async def get_context(self, question: str, requesting_client_id: Optional[str]) -> str:
        """Return the sibling assistant's raw-data answer, or a degraded placeholder."""

        memory_id = mint_memory_id()
        prompt = RAW_DATA_PROMPT.format(question=question)
        try:
            await self._trigger(memory_id, prompt, requesting_client_id)
        except httpx.HTTPError as exc:
            logger.warning("Bridge request for %s failed: %s", memory_id, exc)
            return degraded_context(question)

        if self._runner is not None:
            finished = await self._runner.wait_for_completion(memory_id, self._completion_timeout)
            if finished:
                text = await self._read_answer(memory_id)
                if text is not None:
                    return text

        for attempt, delay in enumerate(self._poll_delays, start=1):
            await self._sleep(delay)
            text = await self._read_answer(memory_id)
            if text is not None:
                return text
            logger.info(
                "Bridge poll %s/%s for %s found no usable answer",
                attempt,
                len(self._poll_delays),
                memory_id,
            )
        logger.warning("Bridge gave up on %s, using placeholder context", memory_id)
        return degraded_context(question)

    async def _trigger(self, memory_id: str, prompt: str, client_id: Optional[str]) -> None:
        payload = {
            "chatLog": [{"sender": "user", "message": prompt}],
            "wsClientId": client_id,
            "memoryId": memory_id,
            "silentMode": True,
        }
        if self._client is not None:
            response = await self._client.put(
                self._target_url, json=payload, timeout=self._request_timeout
            )
        else:
            async with httpx.AsyncClient(timeout=self._request_timeout) as client:
                response = await client.put(self._target_url, json=payload)
        response.raise_for_status()

    async def _read_answer(self, memory_id: str) -> Optional[str]:
        memory = await self._memory_service.load(memory_id)
        if memory is None:
            return None
        text = last_assistant_text(memory)
        if text is None or len(text) < self._min_chars:
            return None
        return text


def create_bridge(
    memory_service: ConversationMemoryService,
    settings: Settings,
    runner: Optional[RunnerManager] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> RAGBridge:
    """Build the bridge from settings."""

    return RAGBridge(
        memory_service,
        target_url=settings.bridge_target_url,
        poll_delays=settings.parsed_bridge_poll_delays(),
        min_response_chars=settings.bridge_min_response_chars,
        completion_timeout_sec=settings.bridge_completion_timeout_sec,
        request_timeout_sec=settings.request_timeout_sec,
        runner=runner,
        http_client=http_client,
    )
