"""Tests for task queueing, assignment and the lifecycle state machine."""
from __future__ import annotations

import contextlib

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from agentgrid.core.errors import (
    AgentUnavailable,
    CapabilityMismatch,
    DeadlineExceeded,
    DuplicateTask,
    InvalidTransition,
    UnknownTask,
)
from agentgrid.core.models import (
    TRANSITIONS,
    ActionProposal,
    AgentStatus,
    Task,
    TaskStatus,
    capability_set,
)
from agentgrid.orchestration.registry import AgentRegistry
from agentgrid.orchestration.scheduler import TaskScheduler


def make_task(task_id: str, *caps: str, priority: int = 0, **kwargs) -> Task:
    return Task(task_id=task_id, required=capability_set(caps or ["work"]), priority=priority, **kwargs)


def finish(scheduler: TaskScheduler, task_id: str) -> None:
    scheduler.start(task_id)
    scheduler.complete(task_id, result={"ok": True})


def test_assignment_follows_priority_then_submission_order(
    registry: AgentRegistry, scheduler: TaskScheduler
) -> None:
    registry.register(["work"], agent_id="solo")
    for task_id, priority in (("T1", 5), ("T2", 9), ("T3", 5)):
        scheduler.submit(make_task(task_id, priority=priority))

    order = []
    for _ in range(3):
        [(task_id, agent_id)] = scheduler.schedule()
        assert agent_id == "solo"
        order.append(task_id)
        finish(scheduler, task_id)

    assert order == ["T2", "T1", "T3"]


def test_agent_is_busy_until_its_task_finishes(
    registry: AgentRegistry, scheduler: TaskScheduler
) -> None:
    registry.register(["work"], agent_id="a1")
    scheduler.submit(make_task("t1"))
    scheduler.submit(make_task("t2"))

    assert scheduler.schedule() == [("t1", "a1")]
    assert registry.get("a1").status is AgentStatus.BUSY
    assert scheduler.schedule() == []

    finish(scheduler, "t1")
    assert registry.get("a1").status is AgentStatus.IDLE
    assert scheduler.schedule() == [("t2", "a1")]


def test_load_spreads_to_least_recently_assigned_agent(
    registry: AgentRegistry, scheduler: TaskScheduler, clock
) -> None:
    registry.register(["work"], agent_id="a")
    registry.register(["work"], agent_id="b")
    scheduler.submit(make_task("t1"))
    assert scheduler.schedule() == [("t1", "a")]
    finish(scheduler, "t1")

    clock.advance(1)
    scheduler.submit(make_task("t2"))
    assert scheduler.schedule() == [("t2", "b")]


def test_blocked_task_does_not_hold_back_others(
    registry: AgentRegistry, scheduler: TaskScheduler
) -> None:
    registry.register(["gpu"], agent_id="gpu-agent")
    registry.register(["cpu"], agent_id="cpu-agent")
    registry.mark("gpu-agent", AgentStatus.BUSY)
    scheduler.submit(make_task("heavy", "gpu", priority=10))
    scheduler.submit(make_task("light", "cpu", priority=1))

    assert scheduler.schedule() == [("light", "cpu-agent")]
    assert scheduler.status("heavy").status is TaskStatus.QUEUED


def test_duplicate_submission_leaves_original_untouched(
    registry: AgentRegistry, scheduler: TaskScheduler
) -> None:
    registry.register(["work"], agent_id="a1")
    scheduler.submit(make_task("t1", priority=3, payload={"v": 1}))

    with pytest.raises(DuplicateTask):
        scheduler.submit(make_task("t1", priority=9, payload={"v": 2}))

    task = scheduler.status("t1")
    assert task.priority == 3
    assert task.payload == {"v": 1}
    assert scheduler.queue_depth() == 1


def test_unadvertised_capability_is_rejected(scheduler: TaskScheduler) -> None:
    with pytest.raises(CapabilityMismatch):
        scheduler.submit(make_task("t1", "nobody-does-this"))
    assert "t1" not in scheduler


def test_unadvertised_capability_accepted_when_allowed(registry: AgentRegistry, clock) -> None:
    lenient = TaskScheduler(registry, clock=clock, reject_unadvertised=False)
    lenient.submit(make_task("t1", "later"))
    assert lenient.status("t1").status is TaskStatus.QUEUED


def test_task_fails_after_unavailable_budget(
    registry: AgentRegistry, scheduler: TaskScheduler
) -> None:
    finished = []
    scheduler.add_terminal_listener(finished.append)
    registry.register(["work"], agent_id="a1")
    registry.mark("a1", AgentStatus.OFFLINE)
    scheduler.submit(make_task("t1"))

    for _ in range(3):
        scheduler.schedule()
        assert scheduler.status("t1").status is TaskStatus.QUEUED
    scheduler.schedule()

    task = scheduler.status("t1")
    assert task.status is TaskStatus.FAILED
    assert task.failure_reason == AgentUnavailable.code
    assert [t.task_id for t in finished] == ["t1"]


def test_deadline_expiry_fails_queued_task(
    registry: AgentRegistry, scheduler: TaskScheduler, clock
) -> None:
    registry.register(["work"], agent_id="a1")
    registry.mark("a1", AgentStatus.BUSY)
    scheduler.submit(make_task("t1", deadline=clock() + 5))

    clock.advance(5)
    scheduler.schedule()

    task = scheduler.status("t1")
    assert task.status is TaskStatus.FAILED
    assert task.failure_reason == DeadlineExceeded.code


def test_deadline_does_not_interrupt_running_task(
    registry: AgentRegistry, scheduler: TaskScheduler, clock
) -> None:
    registry.register(["work"], agent_id="a1")
    scheduler.submit(make_task("t1", deadline=clock() + 5))
    scheduler.schedule()
    scheduler.start("t1", "a1")

    clock.advance(10)
    assert scheduler.expire_deadlines() == []
    assert scheduler.status("t1").status is TaskStatus.RUNNING


def test_full_lifecycle_history(registry: AgentRegistry, scheduler: TaskScheduler) -> None:
    registry.register(["work"], agent_id="a1")
    scheduler.submit(make_task("t1"))
    scheduler.schedule()
    scheduler.start("t1", "a1")
    task = scheduler.complete("t1", result="done", agent_id="a1")

    assert task.history == [
        TaskStatus.QUEUED,
        TaskStatus.ASSIGNED,
        TaskStatus.RUNNING,
        TaskStatus.COMPLETED,
    ]
    assert task.result == "done"


def test_terminal_tasks_reject_further_transitions(
    registry: AgentRegistry, scheduler: TaskScheduler
) -> None:
    registry.register(["work"], agent_id="a1")
    scheduler.submit(make_task("t1"))
    scheduler.schedule()
    scheduler.start("t1")
    scheduler.fail("t1", reason="boom")

    with pytest.raises(InvalidTransition):
        scheduler.complete("t1", result="late")
    with pytest.raises(InvalidTransition):
        scheduler.start("t1")
    assert scheduler.status("t1").result is None


def test_completing_a_queued_task_is_invalid(
    registry: AgentRegistry, scheduler: TaskScheduler
) -> None:
    registry.register(["work"], agent_id="a1")
    scheduler.submit(make_task("t1"))
    with pytest.raises(InvalidTransition):
        scheduler.complete("t1")


def test_report_from_wrong_agent_is_rejected(
    registry: AgentRegistry, scheduler: TaskScheduler
) -> None:
    registry.register(["work"], agent_id="a1")
    registry.register(["work"], agent_id="a2")
    scheduler.submit(make_task("t1"))
    [(_, owner)] = scheduler.schedule()
    other = "a2" if owner == "a1" else "a1"

    with pytest.raises(InvalidTransition):
        scheduler.start("t1", other)


def test_cancel_queued_and_running(registry: AgentRegistry, scheduler: TaskScheduler) -> None:
    registry.register(["work"], agent_id="a1")
    scheduler.submit(make_task("running"))
    scheduler.submit(make_task("waiting"))
    scheduler.schedule()
    scheduler.start("running")

    assert scheduler.cancel("waiting").status is TaskStatus.CANCELLED
    flagged = scheduler.cancel("running")
    assert flagged.status is TaskStatus.RUNNING
    assert flagged.cancel_requested

    # Cancelling a finished task is a no-op.
    assert scheduler.cancel("waiting").status is TaskStatus.CANCELLED


def test_requeue_keeps_original_order(registry: AgentRegistry, scheduler: TaskScheduler) -> None:
    registry.register(["work"], agent_id="a1")
    scheduler.submit(make_task("first"))
    scheduler.submit(make_task("second"))
    scheduler.schedule()

    task = scheduler.requeue("first", reason="ProposalConflict")

    assert task.status is TaskStatus.QUEUED
    assert task.assigned_agent is None
    assert task.last_error == "ProposalConflict"
    assert registry.get("a1").status is AgentStatus.IDLE
    assert scheduler.schedule() == [("first", "a1")]
    assert scheduler.status("first").attempts == 2


def test_reclaim_agent_requeues_in_flight_work(
    registry: AgentRegistry, scheduler: TaskScheduler
) -> None:
    registry.register(["work"], agent_id="a1")
    scheduler.submit(make_task("t1"))
    scheduler.schedule()
    scheduler.start("t1")

    assert scheduler.reclaim_agent("a1") == ["t1"]
    assert scheduler.status("t1").status is TaskStatus.QUEUED
    assert scheduler.status("t1").last_error == "AgentOffline"


def test_proposal_priority_only_for_owned_active_tasks(
    registry: AgentRegistry, scheduler: TaskScheduler
) -> None:
    registry.register(["work"], agent_id="a1")
    scheduler.submit(make_task("t1", priority=4))

    assert scheduler.proposal_priority(ActionProposal(agent_id="a1", task_id="t1")) is None
    scheduler.schedule()
    assert scheduler.proposal_priority(ActionProposal(agent_id="a1", task_id="t1")) == 4
    assert scheduler.proposal_priority(ActionProposal(agent_id="a2", task_id="t1")) is None
    assert scheduler.proposal_priority(ActionProposal(agent_id="a1", task_id="nope")) is None


def test_unknown_task_raises(scheduler: TaskScheduler) -> None:
    with pytest.raises(UnknownTask):
        scheduler.status("missing")
    with pytest.raises(UnknownTask):
        scheduler.cancel("missing")


def test_restore_returns_in_flight_tasks_to_queue(registry: AgentRegistry, clock) -> None:
    registry.register(["work"], agent_id="a1")
    source = TaskScheduler(registry, clock=clock)
    source.submit(make_task("done"))
    source.submit(make_task("busy"))
    source.submit(make_task("waiting"))
    source.schedule()
    source.start("done")
    source.complete("done")
    source.schedule()

    restored = TaskScheduler(AgentRegistry(clock=clock), clock=clock, reject_unadvertised=False)
    assert restored.load_records(source.records()) == 3

    assert restored.status("done").status is TaskStatus.COMPLETED
    busy = restored.status("busy")
    assert busy.status is TaskStatus.QUEUED
    assert busy.assigned_agent is None
    assert busy.last_error == "Restarted"
    assert [t.task_id for t in restored.list(TaskStatus.QUEUED)] == ["busy", "waiting"]

    restored.submit(make_task("new"))
    assert restored.status("new").sequence > restored.status("waiting").sequence


task_ids = st.sampled_from(["t0", "t1", "t2", "t3"])
lifecycle_operations = st.lists(
    st.one_of(
        st.tuples(st.sampled_from(["submit", "start", "complete", "fail", "cancel", "requeue"]), task_ids),
        st.tuples(st.just("schedule"), st.just("")),
        st.tuples(st.just("sweep"), st.sampled_from(["", "a2", "a1,a2"])),
    ),
    max_size=50,
)


@settings(max_examples=100, deadline=None)
@given(ops=lifecycle_operations)
def test_task_histories_are_valid_paths(ops) -> None:
    now = [0.0]
    registry = AgentRegistry(heartbeat_timeout=10.0, clock=lambda: now[0])
    scheduler = TaskScheduler(registry, clock=lambda: now[0], unavailable_budget=2)
    registry.add_offline_listener(scheduler.reclaim_agent)
    registry.register(["work"], agent_id="a1")
    registry.register(["work"], agent_id="a2")
    finished = {}

    for kind, arg in ops:
        with contextlib.suppress(DuplicateTask, InvalidTransition, UnknownTask):
            if kind == "submit":
                scheduler.submit(make_task(arg))
            elif kind == "schedule":
                scheduler.schedule()
            elif kind == "sweep":
                now[0] += 11
                for agent_id in ("a1", "a2"):
                    if agent_id not in arg.split(","):
                        registry.heartbeat(agent_id)
                registry.sweep()
            elif kind == "start":
                scheduler.start(arg)
            elif kind == "complete":
                scheduler.complete(arg, result={"ok": True})
            elif kind == "fail":
                scheduler.fail(arg, reason="boom")
            elif kind == "cancel":
                scheduler.cancel(arg)
            else:
                scheduler.requeue(arg, reason="retry")

        for task in scheduler.list():
            if task.task_id in finished:
                assert task.status is finished[task.task_id]
            elif task.status.terminal:
                finished[task.task_id] = task.status

    for task in scheduler.list():
        assert task.history[0] is TaskStatus.QUEUED
        assert task.history[-1] is task.status
        for before, after in zip(task.history, task.history[1:]):
            assert after in TRANSITIONS[before]
        assert not any(status.terminal for status in task.history[:-1])
