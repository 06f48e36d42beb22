"""HTTP surface tests through the FastAPI TestClient."""
from __future__ import annotations

from dataclasses import replace
from typing import Iterator, Tuple

import pytest
from fastapi.testclient import TestClient

from agentgrid.config import Config
from agentgrid.main import create_app
from agentgrid.orchestration.monitor import Monitor
from agentgrid.orchestration.orchestrator import Orchestrator


@pytest.fixture
def client(orchestrator: Orchestrator) -> Iterator[TestClient]:
    orchestrator.declare_resource("gpu", "gpu", 2)
    with TestClient(create_app(orchestrator)) as client:
        yield client


def register(client: TestClient, agent_id: str, *capabilities: str) -> dict:
    response = client.post("/agents", json={"agent_id": agent_id, "capabilities": list(capabilities)})
    assert response.status_code == 201
    return response.json()


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_agent_registration_and_heartbeat(client: TestClient) -> None:
    body = register(client, "a1", "summarize@2")
    assert body["status"] == "idle"
    assert body["capabilities"] == ["summarize@2"]

    assert client.post("/agents/a1/heartbeat").status_code == 204
    assert [a["agent_id"] for a in client.get("/agents").json()] == ["a1"]

    duplicate = client.post("/agents", json={"agent_id": "a1", "capabilities": ["x"]})
    assert duplicate.status_code == 409
    assert duplicate.json() == {
        "error": "DuplicateAgent",
        "detail": "Agent 'a1' is already registered",
        "retryable": False,
    }

    assert client.delete("/agents/a1").status_code == 204
    assert client.post("/agents/a1/heartbeat").status_code == 404


def test_task_submission_and_lookup(client: TestClient) -> None:
    register(client, "a1", "summarize")
    created = client.post(
        "/tasks",
        json={"task_id": "t1", "required": ["summarize"], "priority": 4, "payload": {"doc": "x"}},
    )
    assert created.status_code == 201
    assert created.json()["status"] == "queued"

    assert client.get("/tasks/t1").json()["priority"] == 4
    assert [t["task_id"] for t in client.get("/tasks", params={"status": "queued"}).json()] == ["t1"]
    assert client.get("/tasks", params={"status": "bogus"}).status_code == 400

    again = client.post("/tasks", json={"task_id": "t1", "required": ["summarize"]})
    assert again.status_code == 409
    assert client.get("/tasks/t1").json()["priority"] == 4


def test_task_errors_map_to_statuses(client: TestClient) -> None:
    missing = client.get("/tasks/nope")
    assert missing.status_code == 404
    assert missing.json()["error"] == "UnknownTask"

    unmatched = client.post("/tasks", json={"required": ["nobody"]})
    assert unmatched.status_code == 422
    assert unmatched.json()["error"] == "CapabilityMismatch"


def test_task_lifecycle_reports(client: TestClient, orchestrator: Orchestrator) -> None:
    register(client, "a1", "work")
    client.post("/tasks", json={"task_id": "t1", "required": ["work"]})
    client.post("/tasks", json={"task_id": "t2", "required": ["work"]})
    client.portal.call(orchestrator.schedule_pass)

    started = client.post("/tasks/t1/start", json={"agent_id": "a1"})
    assert started.json()["status"] == "running"
    assert client.post("/tasks/t1/start", json={"agent_id": "a1"}).status_code == 409

    failed = client.post("/tasks/t1/fail", json={"reason": "tool crashed", "agent_id": "a1"})
    assert failed.json()["failure_reason"] == "tool crashed"

    cancelled = client.post("/tasks/t2/cancel")
    assert cancelled.json()["status"] == "cancelled"


def test_proposals_are_reconciled(client: TestClient, orchestrator: Orchestrator) -> None:
    register(client, "a1", "work")
    client.post("/tasks", json={"task_id": "t1", "required": ["work"]})
    client.portal.call(orchestrator.schedule_pass)

    submitted = client.post(
        "/proposals", json={"agent_id": "a1", "task_id": "t1", "effect": {"ok": True}, "claims": ["X"]}
    )
    assert submitted.status_code == 202

    resolution = client.post("/proposals/reconcile").json()
    assert resolution == {"accepted": ["t1"], "rejected": [], "stale": []}
    assert client.get("/tasks/t1").json()["result"] == {"ok": True}


def test_resource_requests_and_releases(client: TestClient) -> None:
    granted = client.post("/resources/gpu/requests", json={"holder_id": "h1", "amount": 2})
    assert granted.json()["status"] == "granted"

    queued = client.post("/resources/gpu/requests", json={"holder_id": "h2", "amount": 1})
    assert queued.json()["status"] == "queued"

    timed_out = client.post(
        "/resources/gpu/requests", json={"holder_id": "h3", "amount": 1, "wait": True, "timeout": 0.01}
    )
    assert timed_out.status_code == 503
    assert timed_out.json()["retryable"] is True
    assert timed_out.headers["Retry-After"] == "1"

    over = client.post("/resources/gpu/release", json={"holder_id": "h1", "amount": 3})
    assert over.status_code == 409
    assert over.json()["error"] == "OverRelease"

    assert client.post("/resources/gpu/release", json={"holder_id": "h1", "amount": 1}).status_code == 204
    [gpu] = client.get("/resources").json()
    assert gpu["ledger"] == {"h1": 1, "h2": 1}

    assert client.post("/resources/gpu/requests", json={"holder_id": "h1", "amount": 5}).status_code == 422
    assert client.post("/resources/ram/requests", json={"holder_id": "h1", "amount": 1}).status_code == 404


def test_metrics_and_alerts(client: TestClient, orchestrator: Orchestrator) -> None:
    register(client, "a1", "work")

    samples = {(s["source"], s["name"]) for s in client.get("/metrics").json()}
    assert ("registry", "online_agents") in samples
    assert ("resource:gpu", "utilization") in samples

    exposition = client.get("/metrics/prometheus")
    assert exposition.headers["content-type"].startswith("text/plain")
    assert "agentgrid_metric" in exposition.text

    async def escalate() -> None:
        orchestrator.monitor.raise_alert("registry", "online_agents", 0, reason="none left")

    with client.websocket_connect("/alerts/stream") as websocket:
        client.portal.call(escalate)
        pushed = websocket.receive_json()
    assert pushed["reason"] == "none left"
    assert client.get("/alerts", params={"limit": 1}).json()[0]["metric"] == "online_agents"


@pytest.fixture
def small_mailbox(settings: Config, clock) -> Iterator[Tuple[TestClient, Orchestrator]]:
    orchestrator = Orchestrator.build(
        replace(settings, broker_queue_size=2), clock=clock, monitor=Monitor(clock=clock)
    )
    with TestClient(create_app(orchestrator)) as client:
        yield client, orchestrator


def test_polling_agent_keeps_receiving_work_past_mailbox_size(small_mailbox) -> None:
    client, orchestrator = small_mailbox
    register(client, "ext", "work")

    for i in range(4):
        task_id = f"t{i}"
        client.post("/tasks", json={"task_id": task_id, "required": ["work"]})
        assert client.portal.call(orchestrator.schedule_pass) == [(task_id, "ext")]
        assert client.post("/agents/ext/heartbeat").status_code == 204

        [assigned] = client.get("/agents/ext/messages").json()
        assert assigned["sender_id"] == "scheduler"
        assert assigned["sequence"] == i + 1
        assert assigned["payload"]["type"] == "task.assigned"
        assert assigned["payload"]["task"]["task_id"] == task_id

        client.post("/proposals", json={"agent_id": "ext", "task_id": task_id, "effect": {"n": i}})
        assert client.post("/proposals/reconcile").json()["accepted"] == [task_id]
        [result] = client.get("/agents/ext/messages").json()
        assert result["payload"] == {"type": "proposal.accepted", "task_id": task_id}

    assert {t["status"] for t in client.get("/tasks").json()} == {"completed"}
    assert client.get("/agents/ext/messages", params={"wait": 0.01}).json() == []
    assert client.get("/agents/ghost/messages").status_code == 404
