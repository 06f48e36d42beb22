"""HTTP routes for resource inspection, requests and releases."""
from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from agentgrid.core.models import Resource
from agentgrid.orchestration.orchestrator import Orchestrator
from agentgrid.orchestration.resources import DEFAULT_TIMEOUT
from agentgrid.runtime import get_orchestrator

router = APIRouter(prefix="/resources", tags=["resources"])


class ResourceResponse(BaseModel):
    resource_id: str
    type: str
    capacity: int
    allocated: int
    ledger: Dict[str, int]

    @classmethod
    def from_resource(cls, resource: Resource) -> "ResourceResponse":
        return cls(
            resource_id=resource.resource_id,
            type=resource.type,
            capacity=resource.capacity,
            allocated=resource.allocated,
            ledger=resource.ledger,
        )


class ResourceRequestBody(BaseModel):
    holder_id: str
    amount: int
    priority: int = 0
    wait: bool = Field(False, description="Suspend until granted instead of returning 'queued'")
    timeout: Optional[float] = Field(None, description="Seconds to wait; server default when omitted")


class ResourceReleaseBody(BaseModel):
    holder_id: str
    amount: int


class AllocationResponse(BaseModel):
    resource_id: str
    holder_id: str
    status: str


@router.get("", response_model=List[ResourceResponse])
async def list_resources(orchestrator: Orchestrator = Depends(get_orchestrator)) -> List[ResourceResponse]:
    return [ResourceResponse.from_resource(r) for r in orchestrator.list_resources()]


@router.post("/{resource_id}/requests", response_model=AllocationResponse)
async def request_resource(
    resource_id: str,
    body: ResourceRequestBody,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> AllocationResponse:
    outcome = await orchestrator.request_resource(
        body.holder_id,
        resource_id,
        body.amount,
        priority=body.priority,
        wait=body.wait,
        timeout=body.timeout if body.timeout is not None else DEFAULT_TIMEOUT,
    )
    return AllocationResponse(resource_id=resource_id, holder_id=body.holder_id, status=outcome.value)


@router.post("/{resource_id}/release", status_code=status.HTTP_204_NO_CONTENT)
async def release_resource(
    resource_id: str,
    body: ResourceReleaseBody,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> None:
    orchestrator.release_resource(body.holder_id, resource_id, body.amount)
