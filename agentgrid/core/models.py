"""Core data models shared across orchestrator components."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from .errors import InvalidTransition

BROADCAST = "*"


class AgentStatus(Enum):
    """Availability of an agent as seen by the registry."""

    IDLE = "idle"
    BUSY = "busy"
    OFFLINE = "offline"


class TaskStatus(Enum):
    """Lifecycle states for a task owned by the scheduler."""

    QUEUED = "queued"
    ASSIGNED = "assigned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

# Edges into QUEUED from ASSIGNED/RUNNING are requeues (agent lost, proposal conflict).
TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.ASSIGNED, TaskStatus.CANCELLED, TaskStatus.FAILED}),
    TaskStatus.ASSIGNED: frozenset(
        {TaskStatus.RUNNING, TaskStatus.CANCELLED, TaskStatus.FAILED, TaskStatus.QUEUED}
    ),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.QUEUED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True, slots=True, order=True)
class Capability:
    """A named, versioned contract an agent can fulfil."""

    name: str
    version: str = "1"

    @classmethod
    def parse(cls, text: str) -> Capability:
        """Parse ``name@version``; the version defaults to ``1``."""
        name, _, version = text.strip().partition("@")
        if not name:
            raise ValueError(f"Invalid capability: {text!r}")
        return cls(name=name, version=version or "1")

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


def capability_set(values: Iterable[Any]) -> FrozenSet[Capability]:
    """Normalise strings or Capability instances into a frozen set."""
    return frozenset(v if isinstance(v, Capability) else Capability.parse(str(v)) for v in values)


def _dump_capabilities(capabilities: FrozenSet[Capability]) -> List[str]:
    return [str(c) for c in sorted(capabilities)]


@dataclass(slots=True)
class Agent:
    """Registry record for a single agent."""

    agent_id: str
    capabilities: FrozenSet[Capability] = frozenset()
    status: AgentStatus = AgentStatus.IDLE
    last_heartbeat: float = 0.0
    last_assigned: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def satisfies(self, required: FrozenSet[Capability]) -> bool:
        return required <= self.capabilities

    def to_record(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "capabilities": _dump_capabilities(self.capabilities),
            "status": self.status.value,
            "last_heartbeat": self.last_heartbeat,
            "last_assigned": self.last_assigned,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> Agent:
        return cls(
            agent_id=record["agent_id"],
            capabilities=capability_set(record.get("capabilities", ())),
            status=AgentStatus(record.get("status", AgentStatus.IDLE.value)),
            last_heartbeat=float(record.get("last_heartbeat", 0.0)),
            last_assigned=float(record.get("last_assigned", 0.0)),
            metadata=dict(record.get("metadata", {})),
        )


@dataclass(slots=True)
class Task:
    """Unit of work tracked by the scheduler."""

    task_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    required: FrozenSet[Capability] = frozenset()
    priority: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)
    deadline: Optional[float] = None
    status: TaskStatus = TaskStatus.QUEUED
    assigned_agent: Optional[str] = None
    result: Optional[Any] = None
    failure_reason: Optional[str] = None
    last_error: Optional[str] = None
    submitted_at: float = 0.0
    sequence: int = 0
    attempts: int = 0
    unavailable_passes: int = 0
    cancel_requested: bool = False
    history: List[TaskStatus] = field(default_factory=list)

    def transition(self, target: TaskStatus) -> None:
        """Move to ``target`` if the state machine allows it."""
        if target not in TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Task '{self.task_id}' cannot move from {self.status.value} to {target.value}"
            )
        self.status = target
        self.history.append(target)

    def to_record(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "required": _dump_capabilities(self.required),
            "priority": self.priority,
            "payload": dict(self.payload),
            "deadline": self.deadline,
            "status": self.status.value,
            "assigned_agent": self.assigned_agent,
            "result": self.result,
            "failure_reason": self.failure_reason,
            "last_error": self.last_error,
            "submitted_at": self.submitted_at,
            "sequence": self.sequence,
            "attempts": self.attempts,
            "unavailable_passes": self.unavailable_passes,
            "cancel_requested": self.cancel_requested,
            "history": [s.value for s in self.history],
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> Task:
        deadline = record.get("deadline")
        return cls(
            task_id=record["task_id"],
            required=capability_set(record.get("required", ())),
            priority=int(record.get("priority", 0)),
            payload=dict(record.get("payload", {})),
            deadline=float(deadline) if deadline is not None else None,
            status=TaskStatus(record.get("status", TaskStatus.QUEUED.value)),
            assigned_agent=record.get("assigned_agent"),
            result=record.get("result"),
            failure_reason=record.get("failure_reason"),
            last_error=record.get("last_error"),
            submitted_at=float(record.get("submitted_at", 0.0)),
            sequence=int(record.get("sequence", 0)),
            attempts=int(record.get("attempts", 0)),
            unavailable_passes=int(record.get("unavailable_passes", 0)),
            cancel_requested=bool(record.get("cancel_requested", False)),
            history=[TaskStatus(s) for s in record.get("history", [])],
        )


@dataclass(slots=True)
class Resource:
    """Finite shared quantity with its allocation ledger."""

    resource_id: str
    type: str
    capacity: int
    ledger: Dict[str, int] = field(default_factory=dict)

    @property
    def allocated(self) -> int:
        return sum(self.ledger.values())

    @property
    def available(self) -> int:
        return self.capacity - self.allocated

    @property
    def utilization(self) -> float:
        return self.allocated / self.capacity if self.capacity else 0.0


@dataclass(slots=True)
class Message:
    """Canonical message exchanged between agents over the broker."""

    sender_id: str
    recipient_id: str
    payload: Dict[str, Any]
    correlation_id: Optional[str] = None
    sequence: int = 0
    sent_at: float = 0.0

    @property
    def is_broadcast(self) -> bool:
        return self.recipient_id == BROADCAST


@dataclass(frozen=True, slots=True)
class ActionProposal:
    """An agent's candidate effect for a task, subject to conflict resolution."""

    agent_id: str
    task_id: str
    effect: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    claims: FrozenSet[str] = frozenset()
    timestamp: float = 0.0


@dataclass(frozen=True, slots=True)
class MetricSample:
    source: str
    name: str
    value: float
    timestamp: float


@dataclass(frozen=True, slots=True)
class ThresholdRule:
    """Alert when ``metric`` compared against ``threshold`` holds."""

    metric: str
    threshold: float
    comparison: str = ">"
    source: Optional[str] = None

    def matches(self, sample: MetricSample) -> bool:
        if sample.name != self.metric:
            return False
        return self.source is None or sample.source == self.source

    def breached(self, value: float) -> bool:
        if self.comparison == ">":
            return value > self.threshold
        if self.comparison == ">=":
            return value >= self.threshold
        if self.comparison == "<":
            return value < self.threshold
        if self.comparison == "<=":
            return value <= self.threshold
        raise ValueError(f"Unsupported comparison '{self.comparison}'")


@dataclass(frozen=True, slots=True)
class Alert:
    """Event emitted by the monitor when a rule is breached or work is escalated."""

    metric: str
    value: float
    threshold: Optional[float]
    component: str
    reason: str
    timestamp: float

    def to_record(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "value": self.value,
            "threshold": self.threshold,
            "component": self.component,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }
