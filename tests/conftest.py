"""Shared fixtures for the orchestration core tests."""
from __future__ import annotations

import pytest

from agentgrid.config import Config
from agentgrid.orchestration.monitor import Monitor
from agentgrid.orchestration.orchestrator import Orchestrator
from agentgrid.orchestration.registry import AgentRegistry
from agentgrid.orchestration.scheduler import TaskScheduler


class FakeClock:
    """Manually advanced clock injected wherever components read time."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock: FakeClock) -> AgentRegistry:
    return AgentRegistry(heartbeat_timeout=10.0, eviction_timeout=60.0, clock=clock)


@pytest.fixture
def scheduler(registry: AgentRegistry, clock: FakeClock) -> TaskScheduler:
    return TaskScheduler(registry, clock=clock, unavailable_budget=3)


@pytest.fixture
def settings() -> Config:
    # Long intervals keep the background loops quiet; tests drive passes by hand.
    return Config(
        environment="test",
        heartbeat_timeout=10.0,
        eviction_timeout=60.0,
        sweep_interval=60.0,
        scheduling_interval=60.0,
        coordination_window=60.0,
        metrics_interval=60.0,
        unavailable_budget=3,
        send_timeout=0.05,
        resource_timeout=0.1,
        starvation_bound=5.0,
    )


@pytest.fixture
def orchestrator(settings: Config, clock: FakeClock) -> Orchestrator:
    return Orchestrator.build(settings, clock=clock, monitor=Monitor(clock=clock))
