"""CLI demonstration of agents taking tasks through the orchestration core."""
from __future__ import annotations

import asyncio
from typing import List

from agentgrid.agents.echo import EchoAgent
from agentgrid.config import Config, ResourceDeclaration
from agentgrid.core.models import Capability, Task
from agentgrid.core.observability import configure_structlog
from agentgrid.orchestration.orchestrator import Orchestrator


async def main() -> None:
    settings = Config(
        environment="development",
        resources=(ResourceDeclaration(resource_id="gpu-pool", type="gpu", capacity=2),),
    )
    orchestrator = Orchestrator.build(settings)

    agents: List[EchoAgent] = [
        EchoAgent(orchestrator, ["echo@1"], agent_id=f"demo-echo-{i}", heartbeat_interval=0.05)
        for i in range(2)
    ]
    for agent in agents:
        await agent.start()
        print(f"Started agent {agent.agent_id} in state {agent.state.name}")

    status = await orchestrator.request_resource("demo-echo-0", "gpu-pool", 1, wait=False)
    print(f"demo-echo-0 requested 1 gpu: {status.value}")

    required = frozenset({Capability("echo", "1")})
    task_ids = [
        orchestrator.submit_task(
            Task(
                task_id="write-report",
                required=required,
                priority=5,
                payload={"content": "Quarterly report", "claims": ["report.md"]},
            )
        ),
        orchestrator.submit_task(
            Task(
                task_id="rewrite-report",
                required=required,
                priority=1,
                payload={"content": "Quarterly report v2", "claims": ["report.md"]},
            )
        ),
        orchestrator.submit_task(
            Task(task_id="say-hello", required=required, payload={"content": "Hello agent"})
        ),
    ]

    # Drive the loops by hand until everything settles.
    for _ in range(50):
        for task_id, agent_id in await orchestrator.schedule_pass():
            print(f"Assigned {task_id} to {agent_id}")
        await asyncio.sleep(0.05)
        resolution = await orchestrator.reconcile()
        for proposal in resolution.accepted:
            print(f"Accepted {proposal.task_id} from {proposal.agent_id}")
        for proposal, conflict in resolution.rejected:
            print(f"Rejected {proposal.task_id} from {proposal.agent_id}: {conflict.message}")
        if all(orchestrator.task_status(t).status.terminal for t in task_ids):
            break

    for task_id in task_ids:
        task = orchestrator.task_status(task_id)
        path = " -> ".join(s.value for s in task.history)
        print(f"{task_id}: {task.status.value} ({path}) result={task.result}")

    orchestrator.release_resource("demo-echo-0", "gpu-pool", 1)
    orchestrator.collect_metrics()
    for sample in orchestrator.monitor.latest():
        print(f"metric {sample.source}/{sample.name} = {sample.value:.2f}")

    for agent in agents:
        await agent.stop()
    await orchestrator.bus.close()
    print("Agents stopped")


def run() -> None:
    configure_structlog("development")
    asyncio.run(main())


if __name__ == "__main__":
    run()
