import json

import httpx
import pytest

from liveresearch.schemas.research import ChatTurn
from liveresearch.services.bridge import RAGBridge, degraded_context, mint_memory_id

LONG_ANSWER = "Installed solar capacity reached 1,419 GW in 2023. " * 4


class RecordingTarget:
    """Sibling endpoint stub remembering the memory ids it was asked to fill."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.payloads: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.payloads.append(payload)
        return httpx.Response(self.status_code, json={"memoryId": payload["memoryId"]})

    @property
    def memory_id(self) -> str:
        return self.payloads[-1]["memoryId"]


def build_bridge(memory_service, target, sleep, runner=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(target.handler))
    return RAGBridge(
        memory_service,
        target_url="http://sibling/api/live_research_chat/",
        runner=runner,
        http_client=client,
        sleep=sleep,
    )


@pytest.mark.anyio
async def test_bridge_returns_answer_written_during_wait(memory_service):
    target = RecordingTarget()
    delays = []

    async def sleep(delay: float) -> None:
        delays.append(delay)
        if len(delays) == 2:
            await memory_service.append(target.memory_id, ChatTurn(sender="user", text="q"))
            await memory_service.append(
                target.memory_id, ChatTurn(sender="assistant", text=LONG_ANSWER)
            )

    bridge = build_bridge(memory_service, target, sleep)

    text = await bridge.get_context("How much solar is installed?", "client-1")

    assert text == LONG_ANSWER
    assert delays == [5.0, 10.0]
    payload = target.payloads[0]
    assert payload["silentMode"] is True
    assert payload["wsClientId"] == "client-1"
    assert payload["memoryId"].startswith("live-research-")
    assert payload["chatLog"][0]["sender"] == "user"
    assert "ONLY the raw data" in payload["chatLog"][0]["message"]


@pytest.mark.anyio
async def test_short_answers_fall_back_to_placeholder(memory_service):
    target = RecordingTarget()
    delays = []

    async def sleep(delay: float) -> None:
        delays.append(delay)
        if len(delays) == 1:
            await memory_service.append(
                target.memory_id, ChatTurn(sender="assistant", text="too short")
            )

    bridge = build_bridge(memory_service, target, sleep)

    text = await bridge.get_context("Any data?", None)

    assert text == degraded_context("Any data?")
    assert delays == [5.0, 10.0, 15.0]


@pytest.mark.anyio
async def test_answer_under_legacy_key_is_found(settings, memory_service):
    from liveresearch.db.base import create_engine, create_sessionmaker
    from liveresearch.repos.kv_repo import KeyValueRepo

    target = RecordingTarget()

    async def sleep(delay: float) -> None:
        engine = create_engine(settings.db_url)
        async with create_sessionmaker(engine)() as db:
            async with db.begin():
                await KeyValueRepo(db).set_json(
                    f"live-research-memory-{target.memory_id}",
                    {"chatLog": [{"sender": "assistant", "message": LONG_ANSWER}]},
                )
        await engine.dispose()

    bridge = build_bridge(memory_service, target, sleep)

    assert await bridge.get_context("Legacy?", None) == LONG_ANSWER


@pytest.mark.anyio
async def test_http_failure_returns_placeholder_without_waiting(memory_service):
    target = RecordingTarget(status_code=500)
    delays = []

    async def sleep(delay: float) -> None:
        delays.append(delay)

    bridge = build_bridge(memory_service, target, sleep)

    assert await bridge.get_context("Q", None) == degraded_context("Q")
    assert delays == []


@pytest.mark.anyio
async def test_completion_signal_skips_polling(memory_service):
    target = RecordingTarget()
    delays = []

    class FinishedRunner:
        async def wait_for_completion(self, memory_id: str, timeout: float) -> bool:
            await memory_service.append(memory_id, ChatTurn(sender="assistant", text=LONG_ANSWER))
            return True

    async def sleep(delay: float) -> None:
        delays.append(delay)

    bridge = build_bridge(memory_service, target, sleep, runner=FinishedRunner())

    assert await bridge.get_context("Q", None) == LONG_ANSWER
    assert delays == []


def test_minted_ids_are_unique():
    first, second = mint_memory_id(), mint_memory_id()

    assert first != second
    assert first.startswith("live-research-")
