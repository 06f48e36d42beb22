"""Registry tracking agent identity, capabilities and liveness."""
from __future__ import annotations

import time
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Set

import structlog

from agentgrid.core.errors import DuplicateAgent, UnknownAgent
from agentgrid.core.models import Agent, AgentStatus, Capability, capability_set

log = structlog.get_logger(__name__)

AgentListener = Callable[[str], None]


class AgentRegistry:
    """Owns every Agent record; callers only ever see copies.

    Offline listeners are invoked synchronously whenever an agent goes
    offline or is removed, so in-flight work can be reclaimed. Eviction
    listeners run after a long-silent record has been deleted.
    """

    def __init__(
        self,
        *,
        heartbeat_timeout: float = 15.0,
        eviction_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._heartbeat_timeout = heartbeat_timeout
        self._eviction_timeout = eviction_timeout
        self._clock = clock
        self._agents: Dict[str, Agent] = {}
        self._offline_listeners: List[AgentListener] = []
        self._eviction_listeners: List[AgentListener] = []

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def add_offline_listener(self, listener: AgentListener) -> None:
        self._offline_listeners.append(listener)

    def add_eviction_listener(self, listener: AgentListener) -> None:
        self._eviction_listeners.append(listener)

    def register(
        self,
        capabilities: Iterable[Any],
        *,
        agent_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        agent_id = agent_id or str(uuid.uuid4())
        if agent_id in self._agents:
            raise DuplicateAgent(f"Agent '{agent_id}' is already registered")
        now = self._clock()
        agent = Agent(
            agent_id=agent_id,
            capabilities=capability_set(capabilities),
            status=AgentStatus.IDLE,
            last_heartbeat=now,
            metadata=dict(metadata or {}),
        )
        self._agents[agent_id] = agent
        log.info(
            "agent_registered",
            agent_id=agent_id,
            capabilities=[str(c) for c in sorted(agent.capabilities)],
        )
        return agent_id

    def deregister(self, agent_id: str) -> None:
        self._require(agent_id)
        del self._agents[agent_id]
        log.info("agent_deregistered", agent_id=agent_id)
        self._notify_offline(agent_id)

    def heartbeat(self, agent_id: str) -> None:
        agent = self._require(agent_id)
        agent.last_heartbeat = self._clock()
        if agent.status is AgentStatus.OFFLINE:
            agent.status = AgentStatus.IDLE
            log.info("agent_revived", agent_id=agent_id)

    def find(self, required: FrozenSet[Capability]) -> Set[str]:
        """Idle agents whose capability set covers ``required``."""
        return {
            agent.agent_id
            for agent in self._agents.values()
            if agent.status is AgentStatus.IDLE and agent.satisfies(required)
        }

    def advertises(self, required: FrozenSet[Capability]) -> bool:
        """True when any registered agent, whatever its status, covers ``required``."""
        return any(agent.satisfies(required) for agent in self._agents.values())

    def mark(self, agent_id: str, status: AgentStatus) -> None:
        agent = self._require(agent_id)
        if agent.status is status:
            return
        previous = agent.status
        agent.status = status
        log.debug("agent_marked", agent_id=agent_id, previous=previous.value, status=status.value)
        if status is AgentStatus.OFFLINE:
            self._notify_offline(agent_id)

    def record_assignment(self, agent_id: str) -> None:
        agent = self._require(agent_id)
        agent.status = AgentStatus.BUSY
        agent.last_assigned = self._clock()

    def sweep(self, now: Optional[float] = None) -> List[str]:
        """Mark silent agents offline and evict long-silent ones.

        Returns the identifiers that went offline during this sweep.
        """
        now = self._clock() if now is None else now
        went_offline: List[str] = []
        evicted: List[str] = []
        for agent in list(self._agents.values()):
            silence = now - agent.last_heartbeat
            if agent.status is not AgentStatus.OFFLINE and silence > self._heartbeat_timeout:
                agent.status = AgentStatus.OFFLINE
                went_offline.append(agent.agent_id)
                log.warning("agent_offline", agent_id=agent.agent_id, silence=round(silence, 3))
            elif (
                agent.status is AgentStatus.OFFLINE
                and self._eviction_timeout is not None
                and silence > self._eviction_timeout
            ):
                evicted.append(agent.agent_id)

        for agent_id in went_offline:
            self._notify_offline(agent_id)
        for agent_id in evicted:
            del self._agents[agent_id]
            log.info("agent_evicted", agent_id=agent_id)
            for listener in self._eviction_listeners:
                listener(agent_id)
        return went_offline

    def get(self, agent_id: str) -> Agent:
        agent = self._require(agent_id)
        return replace(agent, metadata=dict(agent.metadata))

    def list(self) -> List[Agent]:
        return [replace(a, metadata=dict(a.metadata)) for a in self._agents.values()]

    def online_count(self) -> int:
        return sum(1 for a in self._agents.values() if a.status is not AgentStatus.OFFLINE)

    def records(self) -> List[Dict[str, Any]]:
        return [agent.to_record() for agent in self._agents.values()]

    def load_records(self, records: Iterable[Dict[str, Any]]) -> int:
        """Repopulate from persisted records; agents come back offline until they heartbeat."""
        loaded = 0
        now = self._clock()
        for record in records:
            agent = Agent.from_record(record)
            agent.status = AgentStatus.OFFLINE
            # Eviction grace period starts at restore time.
            agent.last_heartbeat = now
            self._agents[agent.agent_id] = agent
            loaded += 1
        return loaded

    def _require(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise UnknownAgent(f"Agent '{agent_id}' is not registered")
        return agent

    def _notify_offline(self, agent_id: str) -> None:
        for listener in self._offline_listeners:
            listener(agent_id)
