"""Priority scheduler matching queued tasks to capable, idle agents."""
from __future__ import annotations

import heapq
import itertools
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import structlog

from agentgrid.core.errors import (
    AgentUnavailable,
    CapabilityMismatch,
    DeadlineExceeded,
    DuplicateTask,
    InvalidTransition,
    UnknownTask,
)
from agentgrid.core.models import ActionProposal, AgentStatus, Task, TaskStatus
from agentgrid.orchestration.registry import AgentRegistry

log = structlog.get_logger(__name__)

TaskListener = Callable[[Task], None]
# (-priority, submission sequence, queue token, task id)
_QueueEntry = Tuple[int, int, int, str]


class TaskScheduler:
    """Owns Task records and the priority queue.

    Every mutator is synchronous, so on a single event loop each call is a
    serialized critical section and reads always see the last completed
    mutation. Queue entries are invalidated lazily: an entry is live only
    while its task is queued and its token is the task's current token.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        *,
        clock: Callable[[], float] = time.time,
        unavailable_budget: int = 100,
        reject_unadvertised: bool = True,
    ) -> None:
        self._registry = registry
        self._clock = clock
        self._unavailable_budget = unavailable_budget
        self._reject_unadvertised = reject_unadvertised
        self._tasks: Dict[str, Task] = {}
        self._queue: List[_QueueEntry] = []
        self._tokens: Dict[str, int] = {}
        self._token_counter = itertools.count(1)
        self._sequence = itertools.count(1)
        self._terminal_listeners: List[TaskListener] = []

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def add_terminal_listener(self, listener: TaskListener) -> None:
        self._terminal_listeners.append(listener)

    # ------------------------------------------------------------------
    # Submission and queries
    # ------------------------------------------------------------------
    def submit(self, task: Task) -> str:
        """Queue a new task; never suspends."""
        if task.task_id in self._tasks:
            raise DuplicateTask(f"Task '{task.task_id}' already exists")
        if self._reject_unadvertised and not self._registry.advertises(task.required):
            raise CapabilityMismatch(
                f"No registered agent advertises {sorted(str(c) for c in task.required)}"
            )

        record = replace(
            task,
            payload=dict(task.payload),
            status=TaskStatus.QUEUED,
            assigned_agent=None,
            result=None,
            failure_reason=None,
            last_error=None,
            submitted_at=self._clock(),
            sequence=next(self._sequence),
            attempts=0,
            unavailable_passes=0,
            cancel_requested=False,
            history=[TaskStatus.QUEUED],
        )
        self._tasks[record.task_id] = record
        self._push(record)
        log.info(
            "task_submitted",
            task_id=record.task_id,
            priority=record.priority,
            required=[str(c) for c in sorted(record.required)],
        )
        return record.task_id

    def status(self, task_id: str) -> Task:
        return self._copy(self._require(task_id))

    def proposal_priority(self, proposal: ActionProposal) -> Optional[int]:
        """Priority of the proposal's task, or None when the proposal is stale."""
        task = self._tasks.get(proposal.task_id)
        if task is None or task.status not in (TaskStatus.ASSIGNED, TaskStatus.RUNNING):
            return None
        if task.assigned_agent != proposal.agent_id:
            return None
        return task.priority

    def list(self, status: Optional[TaskStatus] = None) -> List[Task]:
        tasks = sorted(self._tasks.values(), key=lambda t: t.sequence)
        return [self._copy(t) for t in tasks if status is None or t.status is status]

    def queue_depth(self) -> int:
        return sum(1 for t in self._tasks.values() if t.status is TaskStatus.QUEUED)

    def active_for(self, agent_id: str) -> List[str]:
        return [
            t.task_id
            for t in self._tasks.values()
            if t.assigned_agent == agent_id
            and t.status in (TaskStatus.ASSIGNED, TaskStatus.RUNNING)
        ]

    # ------------------------------------------------------------------
    # Scheduling pass
    # ------------------------------------------------------------------
    def schedule(self, now: Optional[float] = None) -> List[Tuple[str, str]]:
        """Run one pass over the queue and return ``(task_id, agent_id)`` pairs.

        A task with no eligible agent stays queued and the pass moves on to the
        next one, so a blocked head never starves differently-capable work.
        """
        now = self._clock() if now is None else now
        self.expire_deadlines(now)
        self._compact()

        assignments: List[Tuple[str, str]] = []
        for _, _, _, task_id in list(self._queue):
            task = self._tasks[task_id]
            eligible = self._registry.find(task.required)
            if not eligible:
                task.unavailable_passes += 1
                if task.unavailable_passes > self._unavailable_budget:
                    log.warning(
                        "task_unassignable",
                        task_id=task_id,
                        passes=task.unavailable_passes,
                    )
                    self._finish(task, TaskStatus.FAILED, reason=AgentUnavailable.code)
                continue
            agent_id = self._pick(eligible)
            self._assign(task, agent_id)
            assignments.append((task_id, agent_id))

        self._compact()
        return assignments

    def expire_deadlines(self, now: Optional[float] = None) -> List[str]:
        now = self._clock() if now is None else now
        expired: List[str] = []
        for task in list(self._tasks.values()):
            if task.deadline is None or now < task.deadline:
                continue
            if task.status in (TaskStatus.QUEUED, TaskStatus.ASSIGNED):
                log.warning("task_deadline_exceeded", task_id=task.task_id, deadline=task.deadline)
                self._finish(task, TaskStatus.FAILED, reason=DeadlineExceeded.code)
                expired.append(task.task_id)
        return expired

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------
    def start(self, task_id: str, agent_id: Optional[str] = None) -> Task:
        task = self._require(task_id)
        self._check_owner(task, agent_id)
        task.transition(TaskStatus.RUNNING)
        log.info("task_running", task_id=task_id, agent_id=task.assigned_agent)
        return self._copy(task)

    def complete(self, task_id: str, result: Any = None, agent_id: Optional[str] = None) -> Task:
        task = self._require(task_id)
        self._check_owner(task, agent_id)
        self._finish(task, TaskStatus.COMPLETED, result=result)
        return self._copy(task)

    def fail(self, task_id: str, reason: str, agent_id: Optional[str] = None) -> Task:
        task = self._require(task_id)
        self._check_owner(task, agent_id)
        self._finish(task, TaskStatus.FAILED, reason=reason)
        return self._copy(task)

    def cancel(self, task_id: str) -> Task:
        """Cancel immediately when queued/assigned; only flag a running task."""
        task = self._require(task_id)
        if task.status.terminal:
            return self._copy(task)
        if task.status is TaskStatus.RUNNING:
            task.cancel_requested = True
            log.info("task_cancel_requested", task_id=task_id, agent_id=task.assigned_agent)
            return self._copy(task)
        self._finish(task, TaskStatus.CANCELLED)
        return self._copy(task)

    def requeue(self, task_id: str, reason: str) -> Task:
        """Return an assigned or running task to the queue, keeping its original order."""
        task = self._require(task_id)
        task.transition(TaskStatus.QUEUED)
        self._release_agent(task)
        task.assigned_agent = None
        task.cancel_requested = False
        task.last_error = reason
        self._push(task)
        log.info("task_requeued", task_id=task_id, reason=reason)
        return self._copy(task)

    def reclaim_agent(self, agent_id: str) -> List[str]:
        """Requeue whatever the agent was working on."""
        reclaimed = self.active_for(agent_id)
        for task_id in reclaimed:
            self.requeue(task_id, reason="AgentOffline")
        return reclaimed

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def records(self) -> List[Dict[str, Any]]:
        return [t.to_record() for t in sorted(self._tasks.values(), key=lambda t: t.sequence)]

    def load_records(self, records: Iterable[Dict[str, Any]]) -> int:
        """Restore tasks; in-flight work is assumed lost and goes back to the queue."""
        loaded = 0
        highest = 0
        for record in records:
            task = Task.from_record(record)
            if task.task_id in self._tasks:
                raise DuplicateTask(f"Task '{task.task_id}' already exists")
            if task.status in (TaskStatus.ASSIGNED, TaskStatus.RUNNING):
                task.transition(TaskStatus.QUEUED)
                task.assigned_agent = None
                task.last_error = "Restarted"
            self._tasks[task.task_id] = task
            if task.status is TaskStatus.QUEUED:
                self._push(task)
            highest = max(highest, task.sequence)
            loaded += 1
        if highest:
            current = next(self._sequence)
            self._sequence = itertools.count(max(current, highest + 1))
        return loaded

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _pick(self, eligible: Set[str]) -> str:
        """Load spreading: the agent assigned longest ago wins."""
        return min(eligible, key=lambda aid: (self._registry.get(aid).last_assigned, aid))

    def _assign(self, task: Task, agent_id: str) -> None:
        task.transition(TaskStatus.ASSIGNED)
        task.assigned_agent = agent_id
        task.attempts += 1
        task.unavailable_passes = 0
        self._registry.record_assignment(agent_id)
        log.info("task_assigned", task_id=task.task_id, agent_id=agent_id, attempt=task.attempts)

    def _finish(
        self,
        task: Task,
        status: TaskStatus,
        reason: Optional[str] = None,
        result: Any = None,
    ) -> None:
        task.transition(status)
        if result is not None:
            task.result = result
        if reason is not None:
            task.failure_reason = reason
        self._release_agent(task)
        log.info(
            "task_finished",
            task_id=task.task_id,
            status=status.value,
            reason=reason,
        )
        snapshot = self._copy(task)
        for listener in self._terminal_listeners:
            listener(snapshot)

    def _release_agent(self, task: Task) -> None:
        agent_id = task.assigned_agent
        if agent_id is None or agent_id not in self._registry:
            return
        if any(tid != task.task_id for tid in self.active_for(agent_id)):
            return
        if self._registry.get(agent_id).status is AgentStatus.BUSY:
            self._registry.mark(agent_id, AgentStatus.IDLE)

    def _check_owner(self, task: Task, agent_id: Optional[str]) -> None:
        if agent_id is not None and task.assigned_agent != agent_id:
            raise InvalidTransition(
                f"Task '{task.task_id}' is not assigned to agent '{agent_id}'"
            )

    def _push(self, task: Task) -> None:
        token = next(self._token_counter)
        self._tokens[task.task_id] = token
        heapq.heappush(self._queue, (-task.priority, task.sequence, token, task.task_id))

    def _is_live(self, entry: _QueueEntry) -> bool:
        _, _, token, task_id = entry
        task = self._tasks.get(task_id)
        return (
            task is not None
            and task.status is TaskStatus.QUEUED
            and self._tokens.get(task_id) == token
        )

    def _compact(self) -> None:
        # A sorted list is a valid heap.
        self._queue = sorted(e for e in self._queue if self._is_live(e))

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise UnknownTask(f"Task '{task_id}' does not exist")
        return task

    @staticmethod
    def _copy(task: Task) -> Task:
        return replace(task, payload=dict(task.payload), history=list(task.history))
