import pytest
from conftest import RESEARCH_ANSWER

from liveresearch.client.api import ConversationOptions, ResearchAPIClient


def silent_payload(question: str = "What is renewable energy?", **extra) -> dict:
    payload = {
        "chatLog": [{"sender": "user", "message": question}],
        "silentMode": True,
    }
    payload.update(extra)
    return payload


@pytest.mark.anyio
async def test_health(client):
    response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.anyio
async def test_visible_turn_requires_live_client(client):
    missing = await client.put(
        "/api/live_research_chat/",
        json={"chatLog": [{"sender": "user", "message": "hi"}]},
    )
    unknown = await client.put(
        "/api/live_research_chat/",
        json={"chatLog": [{"sender": "user", "message": "hi"}], "wsClientId": "nope"},
    )

    assert missing.status_code == 400
    assert unknown.status_code == 400
    assert unknown.json()["detail"] == "wsClientId is not a live connection"


@pytest.mark.anyio
async def test_empty_chat_log_is_rejected(client):
    response = await client.put(
        "/api/live_research_chat/", json={"chatLog": [], "silentMode": True}
    )

    assert response.status_code == 400


@pytest.mark.anyio
async def test_out_of_range_fraction_is_rejected(client):
    response = await client.put(
        "/api/live_research_chat/",
        json=silent_payload(percentOfTopQueriesToSearch=1.5),
    )

    assert response.status_code == 422


@pytest.mark.anyio
async def test_silent_turn_is_stored_and_retrievable(app, client):
    response = await client.put(
        "/api/live_research_chat/", json=silent_payload(memoryId="conv-1")
    )

    assert response.status_code == 200
    body = response.json()
    assert body == {"memoryId": "conv-1", "status": "started", "chatLog": []}

    finished = await app.state.runner_manager.wait_for_completion("conv-1", timeout=10)
    assert finished is True

    stored = await client.get("/api/live_research_chat/conv-1")
    assert stored.status_code == 200
    data = stored.json()
    assert [entry["sender"] for entry in data["chatLog"]] == ["user", "assistant"]
    assert data["chatLog"][1]["message"].strip() == RESEARCH_ANSWER
    assert data["totalCosts"] > 0


@pytest.mark.anyio
async def test_memory_id_is_minted_when_absent(app, client):
    response = await client.put("/api/live_research_chat/", json=silent_payload())

    memory_id = response.json()["memoryId"]
    assert memory_id
    assert await app.state.runner_manager.wait_for_completion(memory_id, timeout=10)


@pytest.mark.anyio
async def test_unknown_memory_returns_404(client):
    response = await client.get("/api/live_research_chat/does-not-exist")

    assert response.status_code == 404


@pytest.mark.anyio
async def test_policy_turn_combines_bridged_data_and_research(app, client):
    app.state.bridge.set_http_client(client)

    response = await client.put(
        "/api/policy_research/", json=silent_payload("How can we grow solar?", memoryId="pol-1")
    )
    assert response.status_code == 200

    assert await app.state.runner_manager.wait_for_completion("pol-1", timeout=10)
    stored = (await client.get("/api/policy_research/pol-1")).json()

    assert [entry["sender"] for entry in stored["chatLog"]] == ["user", "assistant"]
    answer = stored["chatLog"][1]["message"]
    assert answer.startswith(RESEARCH_ANSWER)
    assert answer.count(RESEARCH_ANSWER) == 2
    assert stored["totalCosts"] > 0

    research = await app.state.memory_service.load("pol-1-research")
    assert research.chat_log[0].text.startswith('Based on the following data: "')


@pytest.mark.anyio
async def test_api_client_round_trip(app, client):
    api = ResearchAPIClient("http://test/api", http_client=client)

    started = await api.conversation(
        [{"sender": "user", "text": "What is renewable energy?"}],
        client_id="",
        options=ConversationOptions(memory_id="conv-2", silent_mode=True),
    )
    assert started["memoryId"] == "conv-2"
    assert await app.state.runner_manager.wait_for_completion("conv-2", timeout=10)

    log = await api.get_chat_log("conv-2")
    assert log["chatLog"][-1]["sender"] == "assistant"
    assert await api.get_chat_log("missing") == {"chatLog": [], "totalCosts": 0}


@pytest.mark.anyio
async def test_turn_defaults_come_from_app_settings(app, client):
    app.state.settings = app.state.settings.model_copy(update={"default_number_of_queries": 3})

    response = await client.put(
        "/api/live_research_chat/", json=silent_payload(memoryId="conv-defaults")
    )

    assert response.status_code == 200
    assert await app.state.runner_manager.wait_for_completion("conv-defaults", timeout=10)
    memory = await app.state.memory_service.load("conv-defaults")
    assert len(memory.artifacts[0].generated_queries) == 3
