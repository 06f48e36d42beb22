"""Durable snapshot of the task queue and agent table."""
from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Tuple, Union

import structlog

from agentgrid.orchestration.registry import AgentRegistry
from agentgrid.orchestration.scheduler import TaskScheduler

log = structlog.get_logger(__name__)

SNAPSHOT_VERSION = 1


def dump_state(scheduler: TaskScheduler, registry: AgentRegistry) -> Dict[str, Any]:
    """Serialize tasks (in submission order) and agents as ordered record lists."""
    return {
        "version": SNAPSHOT_VERSION,
        "saved_at": time.time(),
        "tasks": scheduler.records(),
        "agents": registry.records(),
    }


def restore_state(
    document: Dict[str, Any], scheduler: TaskScheduler, registry: AgentRegistry
) -> Tuple[int, int]:
    """Load a snapshot into empty components.

    Assigned and running tasks return to the queue; agents come back offline
    and rejoin by heartbeating.
    """
    version = document.get("version")
    if version != SNAPSHOT_VERSION:
        raise ValueError(f"Unsupported snapshot version: {version!r}")
    agents = registry.load_records(document.get("agents", []))
    tasks = scheduler.load_records(document.get("tasks", []))
    return tasks, agents


class StateStore:
    """JSON file holding the latest snapshot; writes are atomic renames."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def save(self, scheduler: TaskScheduler, registry: AgentRegistry) -> None:
        document = dump_state(scheduler, registry)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(document, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp_path, self.path)
        log.info(
            "state_saved",
            path=str(self.path),
            tasks=len(document["tasks"]),
            agents=len(document["agents"]),
        )

    def load(self, scheduler: TaskScheduler, registry: AgentRegistry) -> Tuple[int, int]:
        if not self.path.exists():
            return 0, 0
        document = json.loads(self.path.read_text(encoding="utf-8"))
        tasks, agents = restore_state(document, scheduler, registry)
        log.info("state_restored", path=str(self.path), tasks=tasks, agents=agents)
        return tasks, agents
