"""HTTP routes through which external agents submit action proposals."""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from agentgrid.core.models import ActionProposal
from agentgrid.orchestration.orchestrator import Orchestrator
from agentgrid.runtime import get_orchestrator

router = APIRouter(prefix="/proposals", tags=["proposals"])


class ProposalRequest(BaseModel):
    agent_id: str
    task_id: str
    effect: dict = Field(default_factory=dict)
    claims: List[str] = Field(default_factory=list, description="Resource/claim identifiers touched")


class ResolutionResponse(BaseModel):
    accepted: List[str]
    rejected: List[str]
    stale: List[str]


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def submit_proposal(
    request: ProposalRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> None:
    orchestrator.submit_proposal(
        ActionProposal(
            agent_id=request.agent_id,
            task_id=request.task_id,
            effect=request.effect,
            claims=frozenset(request.claims),
            timestamp=orchestrator.now(),
        )
    )


@router.post("/reconcile", response_model=ResolutionResponse)
async def reconcile(orchestrator: Orchestrator = Depends(get_orchestrator)) -> ResolutionResponse:
    """Close the current window immediately instead of waiting for the loop."""
    resolution = await orchestrator.reconcile()
    return ResolutionResponse(
        accepted=[p.task_id for p in resolution.accepted],
        rejected=[p.task_id for p, _ in resolution.rejected],
        stale=[p.task_id for p in resolution.stale],
    )
