"""HTTP routes for task submission, query and lifecycle reports."""
from __future__ import annotations

import uuid
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from agentgrid.core.models import Task, TaskStatus, capability_set
from agentgrid.orchestration.orchestrator import Orchestrator
from agentgrid.runtime import get_orchestrator

router = APIRouter(prefix="/tasks", tags=["tasks"])


class TaskSubmitRequest(BaseModel):
    task_id: Optional[str] = Field(None, description="Caller-supplied identifier; generated when omitted")
    required: List[str] = Field(default_factory=list, description="Required capabilities as name@version")
    priority: int = 0
    deadline: Optional[float] = Field(None, description="Absolute deadline on the runtime clock")
    payload: dict = Field(default_factory=dict)


class TaskStartRequest(BaseModel):
    agent_id: Optional[str] = None


class TaskFailRequest(BaseModel):
    reason: str
    agent_id: Optional[str] = None


class TaskResponse(BaseModel):
    task_id: str
    required: List[str]
    priority: int
    deadline: Optional[float]
    status: str
    assigned_agent: Optional[str]
    result: Optional[Any] = None
    failure_reason: Optional[str]
    last_error: Optional[str]
    attempts: int
    cancel_requested: bool
    history: List[str]

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            task_id=task.task_id,
            required=[str(c) for c in sorted(task.required)],
            priority=task.priority,
            deadline=task.deadline,
            status=task.status.value,
            assigned_agent=task.assigned_agent,
            result=task.result,
            failure_reason=task.failure_reason,
            last_error=task.last_error,
            attempts=task.attempts,
            cancel_requested=task.cancel_requested,
            history=[s.value for s in task.history],
        )


@router.post("", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def submit_task(
    request: TaskSubmitRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskResponse:
    try:
        required = capability_set(request.required)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    task_id = orchestrator.submit_task(
        Task(
            task_id=request.task_id or str(uuid.uuid4()),
            required=required,
            priority=request.priority,
            deadline=request.deadline,
            payload=request.payload,
        )
    )
    return TaskResponse.from_task(orchestrator.task_status(task_id))


@router.get("", response_model=List[TaskResponse])
async def list_tasks(
    status_filter: Optional[str] = Query(None, alias="status"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> List[TaskResponse]:
    try:
        wanted = TaskStatus(status_filter) if status_filter else None
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return [TaskResponse.from_task(task) for task in orchestrator.list_tasks(wanted)]


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> TaskResponse:
    return TaskResponse.from_task(orchestrator.task_status(task_id))


@router.post("/{task_id}/cancel", response_model=TaskResponse)
async def cancel_task(task_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> TaskResponse:
    return TaskResponse.from_task(await orchestrator.cancel_task(task_id))


@router.post("/{task_id}/start", response_model=TaskResponse)
async def start_task(
    task_id: str,
    request: TaskStartRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskResponse:
    return TaskResponse.from_task(orchestrator.start_task(task_id, request.agent_id))


@router.post("/{task_id}/fail", response_model=TaskResponse)
async def fail_task(
    task_id: str,
    request: TaskFailRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskResponse:
    return TaskResponse.from_task(orchestrator.fail_task(task_id, request.reason, request.agent_id))
