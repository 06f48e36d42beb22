"""HTTP routes for agent registration, liveness and mailbox polling."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from agentgrid.core.models import Agent, Message
from agentgrid.orchestration.orchestrator import Orchestrator
from agentgrid.runtime import get_orchestrator

router = APIRouter(prefix="/agents", tags=["agents"])


class AgentRegisterRequest(BaseModel):
    agent_id: Optional[str] = Field(None, description="Identifier to claim; generated when omitted")
    capabilities: List[str] = Field(..., description="Capability contracts as name@version")
    metadata: dict = Field(default_factory=dict)


class AgentResponse(BaseModel):
    agent_id: str
    capabilities: List[str]
    status: str
    last_heartbeat: float
    last_assigned: float
    metadata: dict

    @classmethod
    def from_agent(cls, agent: Agent) -> "AgentResponse":
        return cls(
            agent_id=agent.agent_id,
            capabilities=[str(c) for c in sorted(agent.capabilities)],
            status=agent.status.value,
            last_heartbeat=agent.last_heartbeat,
            last_assigned=agent.last_assigned,
            metadata=agent.metadata,
        )


class MessageResponse(BaseModel):
    sender_id: str
    recipient_id: str
    payload: Dict[str, Any]
    correlation_id: Optional[str]
    sequence: int
    sent_at: float

    @classmethod
    def from_message(cls, message: Message) -> "MessageResponse":
        return cls(
            sender_id=message.sender_id,
            recipient_id=message.recipient_id,
            payload=message.payload,
            correlation_id=message.correlation_id,
            sequence=message.sequence,
            sent_at=message.sent_at,
        )


@router.post("", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
async def register_agent(
    request: AgentRegisterRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> AgentResponse:
    try:
        agent_id = await orchestrator.register_agent(
            request.capabilities, agent_id=request.agent_id, metadata=request.metadata
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return AgentResponse.from_agent(orchestrator.get_agent(agent_id))


@router.get("", response_model=List[AgentResponse])
async def list_agents(orchestrator: Orchestrator = Depends(get_orchestrator)) -> List[AgentResponse]:
    return [AgentResponse.from_agent(agent) for agent in orchestrator.list_agents()]


@router.get("/{agent_id}", response_model=AgentResponse)
async def get_agent(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> AgentResponse:
    return AgentResponse.from_agent(orchestrator.get_agent(agent_id))


@router.post("/{agent_id}/heartbeat", status_code=status.HTTP_204_NO_CONTENT)
async def heartbeat(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> None:
    orchestrator.heartbeat(agent_id)


@router.delete("/{agent_id}", status_code=status.HTTP_204_NO_CONTENT)
async def deregister_agent(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> None:
    await orchestrator.deregister_agent(agent_id)


@router.get("/{agent_id}/messages", response_model=List[MessageResponse])
async def receive_messages(
    agent_id: str,
    limit: int = Query(32, ge=1, le=256),
    wait: float = Query(0.0, ge=0.0, le=30.0, description="Seconds to long-poll an empty mailbox"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> List[MessageResponse]:
    """Drain pending assignments and proposal results for an external agent."""
    messages = await orchestrator.receive_messages(agent_id, max_messages=limit, timeout=wait)
    return [MessageResponse.from_message(message) for message in messages]
