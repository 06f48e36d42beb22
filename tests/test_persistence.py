"""Tests for record serialization and the state snapshot store."""
from __future__ import annotations

import json

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from agentgrid.core.models import Agent, AgentStatus, Task, TaskStatus, capability_set
from agentgrid.orchestration.persistence import StateStore, dump_state, restore_state
from agentgrid.orchestration.registry import AgentRegistry
from agentgrid.orchestration.scheduler import TaskScheduler

capabilities = st.frozensets(
    st.builds(
        lambda name, version: f"{name}@{version}",
        st.sampled_from(["summarize", "translate", "render"]),
        st.sampled_from(["1", "2"]),
    ),
    max_size=3,
)
payloads = st.dictionaries(
    st.text(min_size=1, max_size=5),
    st.one_of(st.integers(), st.text(max_size=10), st.booleans(), st.none()),
    max_size=4,
)


@settings(max_examples=75, deadline=None)
@given(
    task_id=st.text(min_size=1, max_size=12),
    required=capabilities,
    priority=st.integers(-10, 10),
    payload=payloads,
    deadline=st.one_of(st.none(), st.floats(0, 1e9, allow_nan=False)),
    status=st.sampled_from(list(TaskStatus)),
    attempts=st.integers(0, 5),
)
def test_task_record_survives_json(task_id, required, priority, payload, deadline, status, attempts) -> None:
    task = Task(
        task_id=task_id,
        required=capability_set(required),
        priority=priority,
        payload=payload,
        deadline=deadline,
        status=status,
        attempts=attempts,
        history=[TaskStatus.QUEUED, status],
    )

    restored = Task.from_record(json.loads(json.dumps(task.to_record())))

    assert restored == task


def populated(clock) -> tuple:
    registry = AgentRegistry(clock=clock)
    scheduler = TaskScheduler(registry, clock=clock)
    registry.register(["work"], agent_id="a1", metadata={"zone": "eu"})
    for task_id in ("t1", "t2", "t3"):
        scheduler.submit(Task(task_id=task_id, required=capability_set(["work"])))
    scheduler.schedule()
    return scheduler, registry


def test_restore_rejects_unknown_version(clock) -> None:
    scheduler, registry = populated(clock)
    document = dump_state(scheduler, registry)
    document["version"] = 99

    with pytest.raises(ValueError):
        restore_state(document, TaskScheduler(AgentRegistry(clock=clock), clock=clock), AgentRegistry(clock=clock))


def test_store_round_trip(tmp_path, clock) -> None:
    scheduler, registry = populated(clock)
    store = StateStore(tmp_path / "state" / "snapshot.json")
    store.save(scheduler, registry)

    fresh_registry = AgentRegistry(clock=clock)
    fresh_scheduler = TaskScheduler(fresh_registry, clock=clock)
    assert store.load(fresh_scheduler, fresh_registry) == (3, 1)

    assert [t.task_id for t in fresh_scheduler.list()] == ["t1", "t2", "t3"]
    assert all(t.status is TaskStatus.QUEUED for t in fresh_scheduler.list())
    assert fresh_registry.get("a1").metadata == {"zone": "eu"}
    assert not (tmp_path / "state" / "snapshot.json.tmp").exists()


def test_missing_snapshot_loads_nothing(tmp_path, clock) -> None:
    registry = AgentRegistry(clock=clock)
    store = StateStore(tmp_path / "absent.json")
    assert store.load(TaskScheduler(registry, clock=clock), registry) == (0, 0)


def test_agent_record_survives_json() -> None:
    agent = Agent(
        agent_id="a1",
        capabilities=capability_set(["render@2", "summarize"]),
        status=AgentStatus.BUSY,
        last_heartbeat=12.5,
        last_assigned=10.0,
        metadata={"zone": "eu", "gpus": 2},
    )
    assert Agent.from_record(json.loads(json.dumps(agent.to_record()))) == agent
