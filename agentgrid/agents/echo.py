"""Simple agent that proposes its task payload back as the action."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List

from agentgrid.agents.base import Agent
from agentgrid.core.models import ActionProposal, Message, Task


class EchoAgent(Agent):
    """Agent that echoes each task's payload, claiming ``payload["claims"]``."""

    def __init__(self, *args: Any, work_delay: float = 0.0, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.work_delay = work_delay
        self.outcomes: List[Dict[str, Any]] = []

    async def execute(self, task: Task) -> ActionProposal:
        if self.work_delay:
            await asyncio.sleep(self.work_delay)  # Simulate work
        effect: Dict[str, Any] = {
            "echo": task.payload.get("content", ""),
            "agent": self.agent_id,
        }
        return self.propose(task, effect, claims=task.payload.get("claims", ()))

    async def handle_message(self, message: Message) -> None:
        self.outcomes.append(message.payload)
