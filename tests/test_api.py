from __future__ import annotations

import time
from typing import Any, Dict, Iterable

import pytest

from goalengine.db.database import InMemoryStore
from goalengine.main import create_app
from goalengine.router.base import LLMRequest
from goalengine.router.router import StreamEventType
from goalengine.runtime import EngineRuntime
from tests.fakes import FakeProvider, SlowTool, fixed_sampler, make_settings, permanent, plan_json, planner_reply

WRITE_NOTES = plan_json({"tool_name": "file_write", "args": {"path": "notes.txt", "content": "hello"}})


@pytest.fixture
def make_client(tmp_path):
    runtimes = []

    def build(*providers: FakeProvider, tools: Iterable[Any] = ()):
        runtime = EngineRuntime(
            make_settings(WORKSPACE_DIR=str(tmp_path / "workspace")),
            providers=list(providers),
            tools=list(tools),
            store=InMemoryStore(),
            resource_sampler=fixed_sampler(),
        )
        runtimes.append(runtime)
        app = create_app(runtime=runtime, app_settings=runtime.settings)
        app.config["TESTING"] = True
        return app.test_client(), runtime

    yield build
    for runtime in runtimes:
        runtime.shutdown()


def wait_for_status(client, goal_id: str, statuses: Iterable[str], timeout: float = 5.0) -> Dict[str, Any]:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/goals/{goal_id}").get_json()
        if body["status"] in statuses:
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"goal {goal_id} stuck in {body['status']}")
        time.sleep(0.02)


def test_home_and_health(make_client) -> None:
    client, _ = make_client(FakeProvider("p"))

    assert client.get("/").get_json()["status"] == "running"

    response = client.get("/health")
    body = response.get_json()
    assert response.status_code == 200
    assert body["status"] == "healthy"
    assert body["providers"] == 1
    assert body["tools"] == 3
    assert body["admitted_goals"] == 0


def test_submit_goal_and_follow_it_to_completion(make_client, tmp_path) -> None:
    client, _ = make_client(FakeProvider("p", replies=[planner_reply(WRITE_NOTES)]))

    response = client.post("/goals", json={"description": "Create a file notes.txt containing hello"})
    assert response.status_code == 201
    goal_id = response.get_json()["id"]

    body = wait_for_status(client, goal_id, {"completed", "failed"})

    assert body["status"] == "completed"
    assert body["steps"][0]["tool_name"] == "file_write"
    assert body["steps"][0]["status"] == "succeeded"
    assert body["result"]["output"]["path"].endswith("notes.txt")
    assert (tmp_path / "workspace" / "notes.txt").read_text() == "hello"

    listed = client.get("/goals").get_json()
    assert [g["id"] for g in listed] == [goal_id]


@pytest.mark.parametrize(
    "payload",
    [{}, {"description": ""}, {"description": "x", "priority": "urgent"}],
)
def test_invalid_goal_body_is_rejected(make_client, payload) -> None:
    client, _ = make_client(FakeProvider("p"))

    response = client.post("/goals", json=payload)

    assert response.status_code == 400
    assert response.get_json()["error_code"] == "validation_error"


def test_unknown_goal_is_404(make_client) -> None:
    client, _ = make_client(FakeProvider("p"))

    for response in (client.get("/goals/goal_missing"), client.post("/goals/goal_missing/stop")):
        assert response.status_code == 404
        assert response.get_json()["error_code"] == "not_found"


def test_stop_running_goal(make_client) -> None:
    client, _ = make_client(
        FakeProvider("p", replies=[planner_reply(plan_json({"tool_name": "slow"}))]),
        tools=[SlowTool(delay=30)],
    )
    goal_id = client.post("/goals", json={"description": "take forever"}).get_json()["id"]
    wait_for_status(client, goal_id, {"executing"})

    response = client.post(f"/goals/{goal_id}/stop")

    assert response.status_code == 200
    assert response.get_json()["status"] == "cancelled"
    assert client.post(f"/goals/{goal_id}/stop").get_json()["status"] == "cancelled"


def test_tools_are_listed(make_client) -> None:
    client, _ = make_client(FakeProvider("p"))

    body = client.get("/tools").get_json()

    assert body["count"] == 3
    assert {t["name"] for t in body["tools"]} == {"llm_generate", "file_write", "file_read"}


def test_chat_returns_routed_response_and_cost(make_client) -> None:
    client, _ = make_client(FakeProvider("cheap", cost_per_token=0.01), FakeProvider("pricey", cost_per_token=0.02))

    response = client.post("/chat", json={"prompt": "hello", "strategy": "cost"})
    body = response.get_json()

    assert response.status_code == 200
    assert body["text"] == "hello from cheap"
    assert body["decision"]["chosen_provider"] == "cheap"
    assert body["cost"] == pytest.approx(0.15)

    costs = client.get("/router/costs").get_json()
    assert costs["total_requests"] == 1
    assert costs["total_cost"] == pytest.approx(0.15)
    assert costs["providers"]["cheap"]["tokens_out"] == 5
    assert client.get("/router/costs?provider_id=pricey").get_json()["total_requests"] == 0


def test_chat_accepts_message_lists(make_client) -> None:
    client, _ = make_client(FakeProvider("p", replies=["sure"]))

    response = client.post("/chat", json={
        "system": "be brief",
        "messages": [{"role": "user", "content": "hi"}],
    })

    assert response.status_code == 200
    assert response.get_json()["text"] == "sure"


def test_chat_without_prompt_is_rejected(make_client) -> None:
    client, _ = make_client(FakeProvider("p"))

    response = client.post("/chat", json={"strategy": "cost"})

    assert response.status_code == 400


def test_chat_provider_failure_is_502(make_client) -> None:
    client, _ = make_client(FakeProvider("p", failures=[permanent("p")]))

    response = client.post("/chat", json={"prompt": "hello"})
    body = response.get_json()

    assert response.status_code == 502
    assert body["error_code"] == "provider_error"
    assert body["severity"] == "permanent"


def test_chat_stream_emits_server_sent_events(make_client) -> None:
    client, _ = make_client(FakeProvider("p", replies=["streamed words"]))

    response = client.post("/chat", json={"prompt": "hello", "stream": True})
    text = response.get_data(as_text=True)

    assert response.mimetype == "text/event-stream"
    assert text.count("event: token") == 4
    assert "event: done" in text
    assert "streamed words" in text


def test_router_providers_lists_descriptors(make_client) -> None:
    client, _ = make_client(FakeProvider("p", quality_tier=2))

    body = client.get("/router/providers").get_json()

    assert body["count"] == 1
    assert body["providers"][0]["id"] == "p"
    assert body["providers"][0]["health"] == "healthy"


def test_abandoned_stream_is_cancelled_and_billed_as_partial(make_client) -> None:
    _, runtime = make_client(FakeProvider("p", replies=["one two three four five"], token_delay=0.02))

    async def open_stream():
        return runtime.engine.router.stream(LLMRequest.from_prompt("count"))

    events = runtime.iterate(open_stream)
    first = next(events)
    events.close()

    assert first.type is StreamEventType.TOKEN
    records = runtime.call(_ledger_records(runtime))
    assert len(records) == 1
    assert records[0].partial is True


async def _ledger_records(runtime):
    return runtime.engine.router.ledger.records()
