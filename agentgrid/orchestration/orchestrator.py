"""Orchestrator wiring the registry, scheduler, broker, resources, coordinator and monitor."""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from agentgrid.config import Config
from agentgrid.core.errors import (
    AgentUnavailable,
    DeadlineExceeded,
    ProposalConflict,
    QueueFull,
)
from agentgrid.core.message_bus import BackpressurePolicy, MessageBroker
from agentgrid.core.models import (
    ActionProposal,
    Agent,
    Message,
    Resource,
    Task,
    TaskStatus,
    ThresholdRule,
)
from agentgrid.orchestration.coordinator import Coordinator, Resolution
from agentgrid.orchestration.monitor import Monitor
from agentgrid.orchestration.persistence import StateStore
from agentgrid.orchestration.registry import AgentRegistry
from agentgrid.orchestration.resources import DEFAULT_TIMEOUT, AllocationStatus, ResourceManager
from agentgrid.orchestration.scheduler import TaskScheduler

log = structlog.get_logger(__name__)

SCHEDULER_ID = "scheduler"
COORDINATOR_ID = "coordinator"

# Message payload types sent to agents
TASK_ASSIGNED = "task.assigned"
TASK_CANCEL = "task.cancel"
PROPOSAL_ACCEPTED = "proposal.accepted"
PROPOSAL_REJECTED = "proposal.rejected"


class Orchestrator:
    """Coordinate agent liveness, task assignment and proposal reconciliation.

    Every component is injected; the orchestrator keeps only identifiers of
    agents and tasks and resolves them through the registry and scheduler.
    """

    def __init__(
        self,
        *,
        bus: MessageBroker,
        registry: AgentRegistry,
        scheduler: TaskScheduler,
        resources: ResourceManager,
        coordinator: Coordinator,
        monitor: Monitor,
        settings: Optional[Config] = None,
        state_store: Optional[StateStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._bus = bus
        self._registry = registry
        self._scheduler = scheduler
        self._resources = resources
        self._coordinator = coordinator
        self._monitor = monitor
        self._settings = settings or Config()
        self._state_store = state_store
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._loops: List[asyncio.Task[None]] = []
        self._evicted: List[str] = []

        self._registry.add_offline_listener(self._on_agent_lost)
        self._registry.add_eviction_listener(self._evicted.append)
        self._scheduler.add_terminal_listener(self._on_task_finished)

    @classmethod
    def build(
        cls,
        settings: Config,
        *,
        clock: Callable[[], float] = time.time,
        monitor: Optional[Monitor] = None,
    ) -> Orchestrator:
        """Construct every component from configuration."""
        registry = AgentRegistry(
            heartbeat_timeout=settings.heartbeat_timeout,
            eviction_timeout=settings.eviction_timeout,
            clock=clock,
        )
        scheduler = TaskScheduler(
            registry,
            clock=clock,
            unavailable_budget=settings.unavailable_budget,
            reject_unadvertised=settings.reject_unadvertised,
        )
        resources = ResourceManager(
            clock=clock,
            request_timeout=settings.resource_timeout,
            starvation_bound=settings.starvation_bound,
        )
        for declaration in settings.resources:
            resources.declare(declaration.resource_id, declaration.type, declaration.capacity)
        bus = MessageBroker(
            max_queue_size=settings.broker_queue_size,
            policy=BackpressurePolicy(settings.backpressure_policy),
            send_timeout=settings.send_timeout,
            max_redeliveries=settings.max_redeliveries,
            clock=clock,
        )
        monitor = monitor or Monitor(clock=clock)
        for threshold in settings.alert_thresholds:
            monitor.add_rule(
                ThresholdRule(
                    metric=threshold.metric,
                    threshold=threshold.threshold,
                    comparison=threshold.comparison,
                )
            )
        return cls(
            bus=bus,
            registry=registry,
            scheduler=scheduler,
            resources=resources,
            coordinator=Coordinator(priority_of=scheduler.proposal_priority),
            monitor=monitor,
            settings=settings,
            state_store=StateStore(settings.state_path) if settings.state_path else None,
            clock=clock,
        )

    @property
    def bus(self) -> MessageBroker:
        return self._bus

    @property
    def monitor(self) -> Monitor:
        return self._monitor

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------
    async def register_agent(
        self,
        capabilities: Iterable[Any],
        *,
        agent_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        agent_id = self._registry.register(capabilities, agent_id=agent_id, metadata=metadata)
        await self._bus.register(agent_id)
        return agent_id

    async def deregister_agent(self, agent_id: str) -> None:
        self._registry.deregister(agent_id)
        await self._bus.unregister(agent_id)

    def heartbeat(self, agent_id: str) -> None:
        self._registry.heartbeat(agent_id)

    async def receive_messages(
        self, agent_id: str, *, max_messages: int = 32, timeout: float = 0.0
    ) -> List[Message]:
        """Drain the mailbox of an agent that polls rather than subscribes."""
        self._registry.get(agent_id)
        return await self._bus.receive(agent_id, max_messages=max_messages, timeout=timeout)

    def list_agents(self) -> List[Agent]:
        return self._registry.list()

    def get_agent(self, agent_id: str) -> Agent:
        return self._registry.get(agent_id)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------
    def submit_task(self, task: Task) -> str:
        return self._scheduler.submit(task)

    def task_status(self, task_id: str) -> Task:
        return self._scheduler.status(task_id)

    def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        return self._scheduler.list(status)

    def start_task(self, task_id: str, agent_id: Optional[str] = None) -> Task:
        return self._scheduler.start(task_id, agent_id)

    def fail_task(self, task_id: str, reason: str, agent_id: Optional[str] = None) -> Task:
        return self._scheduler.fail(task_id, reason, agent_id)

    async def cancel_task(self, task_id: str) -> Task:
        """Cancel a task; a running task only receives an advisory signal."""
        before = self._scheduler.status(task_id)
        task = self._scheduler.cancel(task_id)
        if before.assigned_agent and before.status in (TaskStatus.ASSIGNED, TaskStatus.RUNNING):
            await self._notify(
                before.assigned_agent,
                {"type": TASK_CANCEL, "task_id": task_id},
                correlation_id=task_id,
                sender_id=SCHEDULER_ID,
            )
        return task

    async def schedule_pass(self) -> List[Tuple[str, str]]:
        """Assign what can be assigned and notify the chosen agents."""
        assignments = self._scheduler.schedule()
        notified: List[Tuple[str, str]] = []
        for task_id, agent_id in assignments:
            task = self._scheduler.status(task_id)
            delivered = await self._notify(
                agent_id,
                {"type": TASK_ASSIGNED, "task": task.to_record()},
                correlation_id=task_id,
                sender_id=SCHEDULER_ID,
            )
            if delivered:
                notified.append((task_id, agent_id))
            elif self._scheduler.status(task_id).status is TaskStatus.ASSIGNED:
                self._scheduler.requeue(task_id, reason="AgentUnreachable")
        return notified

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------
    def declare_resource(self, resource_id: str, type: str, capacity: int) -> Resource:
        return self._resources.declare(resource_id, type, capacity)

    async def request_resource(
        self,
        holder_id: str,
        resource_id: str,
        amount: int,
        *,
        priority: int = 0,
        wait: bool = True,
        timeout: Optional[float] = DEFAULT_TIMEOUT,  # type: ignore[assignment]
    ) -> AllocationStatus:
        return await self._resources.request(
            holder_id, resource_id, amount, priority=priority, wait=wait, timeout=timeout
        )

    def release_resource(self, holder_id: str, resource_id: str, amount: int) -> None:
        self._resources.release(holder_id, resource_id, amount)

    def list_resources(self) -> List[Resource]:
        return self._resources.list()

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------
    def submit_proposal(self, proposal: ActionProposal) -> None:
        self._coordinator.submit(proposal)

    async def reconcile(self, proposals: Optional[Iterable[ActionProposal]] = None) -> Resolution:
        """Resolve the current window: winners complete, losers are requeued."""
        resolution = self._coordinator.resolve(proposals)

        # Apply every state change before the first suspension point.
        outcomes: List[Tuple[str, Dict[str, Any]]] = []
        for proposal in resolution.accepted:
            task = self._scheduler.status(proposal.task_id)
            if task.status is TaskStatus.ASSIGNED:
                self._scheduler.start(proposal.task_id, proposal.agent_id)
            self._scheduler.complete(
                proposal.task_id, result=proposal.effect, agent_id=proposal.agent_id
            )
            outcomes.append(
                (proposal.agent_id, {"type": PROPOSAL_ACCEPTED, "task_id": proposal.task_id})
            )
        for proposal, conflict in resolution.rejected:
            self._scheduler.requeue(proposal.task_id, reason=conflict.code)
            outcomes.append(
                (
                    proposal.agent_id,
                    {
                        "type": PROPOSAL_REJECTED,
                        "task_id": proposal.task_id,
                        "error": ProposalConflict.code,
                        "detail": conflict.message,
                    },
                )
            )
        for proposal in resolution.stale:
            log.info("proposal_discarded", agent_id=proposal.agent_id, task_id=proposal.task_id)

        for agent_id, payload in outcomes:
            await self._notify(
                agent_id, payload, correlation_id=payload["task_id"], sender_id=COORDINATOR_ID
            )
        return resolution

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    async def sweep(self) -> List[str]:
        """Liveness sweep plus starvation promotion of resource requests."""
        offline = self._registry.sweep()
        while self._evicted:
            agent_id = self._evicted.pop()
            # Skip ids that registered again while an earlier unregister was pending.
            if agent_id not in self._registry:
                await self._bus.unregister(agent_id)
        self._resources.rebalance()
        return offline

    def collect_metrics(self) -> None:
        """Push the current queue, resource and mailbox figures to the monitor."""
        record = self._monitor.record_value
        record("scheduler", "queue_depth", self._scheduler.queue_depth())
        record("registry", "online_agents", self._registry.online_count())
        record("coordinator", "pending_proposals", self._coordinator.pending())
        for resource in self._resources.list():
            record(f"resource:{resource.resource_id}", "utilization", resource.utilization)
        saturation = self._bus.saturation_snapshot()
        for agent_id, value in saturation.items():
            record(f"mailbox:{agent_id}", "saturation", value)
        record("broker", "max_saturation", max(saturation.values(), default=0.0))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def load_state(self) -> Tuple[int, int]:
        if self._state_store is None:
            return 0, 0
        return self._state_store.load(self._scheduler, self._registry)

    def save_state(self) -> None:
        if self._state_store is not None:
            self._state_store.save(self._scheduler, self._registry)

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Start the scheduling, liveness, reconciliation and metrics loops."""
        if self._loops:
            return
        self._stop_event.clear()
        settings = self._settings
        self._loops = [
            asyncio.create_task(self._run_periodic("schedule", settings.scheduling_interval, self.schedule_pass)),
            asyncio.create_task(self._run_periodic("sweep", settings.sweep_interval, self.sweep)),
            asyncio.create_task(self._run_periodic("reconcile", settings.coordination_window, self.reconcile)),
            asyncio.create_task(self._run_periodic("metrics", settings.metrics_interval, self._collect_async)),
        ]
        log.info("orchestrator_started", loops=len(self._loops))

    async def stop(self) -> None:
        """Signal every loop to stop and wait for completion."""
        if not self._loops:
            return
        self._stop_event.set()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []
        await self._bus.close()
        log.info("orchestrator_stopped")

    async def _collect_async(self) -> None:
        self.collect_metrics()

    async def _run_periodic(
        self, name: str, interval: float, step: Callable[[], Awaitable[Any]]
    ) -> None:
        while not self._stop_event.is_set():
            try:
                await step()
            except Exception:  # noqa: BLE001
                log.exception("loop_step_failed", loop=name)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _notify(
        self,
        agent_id: str,
        payload: Dict[str, Any],
        *,
        correlation_id: str,
        sender_id: str,
    ) -> bool:
        message = Message(
            sender_id=sender_id,
            recipient_id=agent_id,
            payload=payload,
            correlation_id=correlation_id,
        )
        try:
            return await self._bus.send(message) is not None
        except QueueFull as exc:
            log.warning("agent_notification_failed", agent_id=agent_id, error=exc.code, type=payload["type"])
            return False

    def _on_agent_lost(self, agent_id: str) -> None:
        reclaimed = self._scheduler.reclaim_agent(agent_id)
        self._resources.release_all(agent_id)
        if reclaimed:
            log.warning("agent_tasks_reclaimed", agent_id=agent_id, tasks=reclaimed)
        if self._scheduler.queue_depth() and self._registry.online_count() == 0:
            self._monitor.raise_alert(
                component="registry",
                metric="online_agents",
                value=0,
                reason="No online agents remain for queued work",
            )

    def _on_task_finished(self, task: Task) -> None:
        if task.status is TaskStatus.COMPLETED:
            self._monitor.record_value("scheduler", "task_latency", self._clock() - task.submitted_at)
        elif task.status is TaskStatus.FAILED and task.failure_reason in (
            DeadlineExceeded.code,
            AgentUnavailable.code,
        ):
            self._monitor.raise_alert(
                component="scheduler",
                metric="task_failed",
                value=1,
                reason=f"{task.failure_reason}: {task.task_id}",
            )
