"""Base agent host connecting an external capability to the orchestrator."""
from __future__ import annotations

import abc
import asyncio
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional, Set

import structlog

from agentgrid.core.errors import OrchestrationError, UnknownAgent
from agentgrid.core.models import ActionProposal, Message, Task, capability_set

if TYPE_CHECKING:
    from agentgrid.orchestration.orchestrator import Orchestrator

log = structlog.get_logger(__name__)


class HostState(Enum):
    """Lifecycle states of an in-process agent host."""

    SPAWNING = auto()
    RUNNING = auto()
    STOPPING = auto()
    STOPPED = auto()
    FAILED = auto()


class Agent(abc.ABC):
    """Abstract agent: registers, heartbeats, executes assignments, proposes actions.

    The host keeps only the orchestrator handle and identifiers; task records
    arrive by message and are never stored beyond the execution of one task.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        capabilities: Iterable[Any],
        *,
        agent_id: Optional[str] = None,
        heartbeat_interval: float = 0.5,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._capabilities = capability_set(capabilities)
        self._requested_id = agent_id
        self._metadata = dict(metadata or {})
        self._heartbeat_interval = heartbeat_interval
        self.agent_id: Optional[str] = None
        self.state = HostState.SPAWNING
        self.last_error: Optional[str] = None
        self.task_count = 0
        self._runner: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._started_event = asyncio.Event()
        self._last_sequence: Dict[str, int] = {}
        self._running: Set[str] = set()
        self._cancelled: Set[str] = set()
        self._work: Set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        """Register with the orchestrator and start the agent's background loop."""
        if self._runner is not None:
            return
        self.agent_id = await self._orchestrator.register_agent(
            self._capabilities, agent_id=self._requested_id, metadata=self._metadata
        )
        self._last_sequence.clear()
        self._stop_event.clear()
        self._started_event.clear()
        self._runner = asyncio.create_task(self._run_safe())
        await self._started_event.wait()

    async def stop(self, *, deregister: bool = True) -> None:
        """Signal the agent to stop and wait for completion."""
        if self._runner is None:
            return
        self.state = HostState.STOPPING
        self._stop_event.set()
        await self._runner
        self._runner = None
        for work in list(self._work):
            work.cancel()
        await asyncio.gather(*self._work, return_exceptions=True)
        if deregister and self.agent_id is not None:
            try:
                await self._orchestrator.deregister_agent(self.agent_id)
            except UnknownAgent:
                pass

    @property
    def _id(self) -> str:
        if self.agent_id is None:
            raise RuntimeError("agent not started")
        return self.agent_id

    async def _run_safe(self) -> None:
        """Wrap the main loop to handle exceptions gracefully."""
        agent_id = self._id
        try:
            async with self._orchestrator.bus.deliver(agent_id) as inbox:
                self.state = HostState.RUNNING
                self._started_event.set()
                await self.on_start()
                while not self._stop_event.is_set():
                    self._orchestrator.heartbeat(agent_id)
                    try:
                        message = await asyncio.wait_for(inbox.get(), timeout=self._heartbeat_interval)
                    except asyncio.TimeoutError:
                        await self.on_idle()
                        continue
                    await self._handle_message(message)
        except Exception as exc:  # noqa: BLE001
            self.state = HostState.FAILED
            self.last_error = str(exc)
            log.error("agent_host_failed", agent_id=self.agent_id, error=str(exc))
            self._started_event.set()
        else:
            self.state = HostState.STOPPED
            self._started_event.set()
        finally:
            await self.on_stop()

    async def _handle_message(self, message: Message) -> None:
        # Redeliveries carry a sequence already seen from that sender.
        if message.sequence <= self._last_sequence.get(message.sender_id, 0):
            return
        self._last_sequence[message.sender_id] = message.sequence

        kind = message.payload.get("type")
        if kind == "task.assigned":
            task = Task.from_record(message.payload["task"])
            self._running.add(task.task_id)
            # Executes concurrently with the receive loop.
            work = asyncio.create_task(self._run_task(task))
            self._work.add(work)
            work.add_done_callback(self._work.discard)
        elif kind == "task.cancel":
            if message.payload["task_id"] in self._running:
                self._cancelled.add(message.payload["task_id"])
        else:
            await self.handle_message(message)

    async def _run_task(self, task: Task) -> None:
        try:
            await self._execute_assignment(task)
        finally:
            self._running.discard(task.task_id)
            self._cancelled.discard(task.task_id)

    async def _execute_assignment(self, task: Task) -> None:
        agent_id = self._id
        if task.task_id in self._cancelled:
            return
        try:
            self._orchestrator.start_task(task.task_id, agent_id)
        except OrchestrationError as exc:
            log.info("assignment_skipped", agent_id=agent_id, task_id=task.task_id, error=exc.code)
            return

        try:
            proposal = await self.execute(task)
        except Exception as exc:  # noqa: BLE001
            self.last_error = str(exc)
            self._report_failure(task, str(exc))
            return

        if task.task_id in self._cancelled:
            self._report_failure(task, "Cancelled")
            return
        self._orchestrator.submit_proposal(proposal)
        self.task_count += 1

    def _report_failure(self, task: Task, reason: str) -> None:
        agent_id = self._id
        try:
            self._orchestrator.fail_task(task.task_id, reason=reason, agent_id=agent_id)
        except OrchestrationError as exc:
            # The task was reclaimed or finished while we worked on it.
            log.info("failure_report_ignored", agent_id=agent_id, task_id=task.task_id, error=exc.code)

    def propose(self, task: Task, effect: Dict[str, Any], claims: Iterable[str] = ()) -> ActionProposal:
        """Build a proposal for ``task`` stamped with the orchestrator clock."""
        return ActionProposal(
            agent_id=self._id,
            task_id=task.task_id,
            effect=effect,
            claims=frozenset(claims),
            timestamp=self._orchestrator.now(),
        )

    @abc.abstractmethod
    async def execute(self, task: Task) -> ActionProposal:
        """Compute the proposed action for an assigned task."""

    async def handle_message(self, message: Message) -> None:
        """Process any message that is not an assignment or cancellation."""
        return None

    async def on_start(self) -> None:
        """Hook executed once the agent loop begins."""
        return None

    async def on_stop(self) -> None:
        """Hook executed when the agent loop exits."""
        return None

    async def on_idle(self) -> None:
        """Hook invoked when no messages were received during the idle window."""
        return None
