"""Metrics export and alert channels."""
from __future__ import annotations

import asyncio
import contextlib
from typing import List, Optional

from fastapi import APIRouter, Depends, Response, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from agentgrid.core.models import Alert
from agentgrid.orchestration.monitor import METRICS_CONTENT_TYPE
from agentgrid.orchestration.orchestrator import Orchestrator
from agentgrid.runtime import get_orchestrator

router = APIRouter(tags=["monitoring"])


class MetricSampleResponse(BaseModel):
    source: str
    name: str
    value: float
    timestamp: float


class AlertResponse(BaseModel):
    metric: str
    value: float
    threshold: Optional[float]
    component: str
    reason: str
    timestamp: float


@router.get("/metrics", response_model=List[MetricSampleResponse])
async def latest_metrics(orchestrator: Orchestrator = Depends(get_orchestrator)) -> List[MetricSampleResponse]:
    """Pull the latest sample per source and metric."""
    orchestrator.collect_metrics()
    return [
        MetricSampleResponse(source=s.source, name=s.name, value=s.value, timestamp=s.timestamp)
        for s in orchestrator.monitor.latest()
    ]


@router.get("/metrics/prometheus")
async def prometheus_metrics(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Response:
    orchestrator.collect_metrics()
    return Response(content=orchestrator.monitor.export_prometheus(), media_type=METRICS_CONTENT_TYPE)


@router.get("/alerts", response_model=List[AlertResponse])
async def recent_alerts(
    limit: Optional[int] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> List[AlertResponse]:
    return [AlertResponse(**alert.to_record()) for alert in orchestrator.monitor.alerts(limit)]


@router.websocket("/alerts/stream")
async def alert_stream(
    websocket: WebSocket,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> None:
    """Push every new alert to the connected client as JSON until it disconnects."""
    async with orchestrator.monitor.stream_alerts() as alerts:
        await websocket.accept()
        forwarder = asyncio.create_task(_forward_alerts(websocket, alerts))
        try:
            # Inbound frames are ignored; reading only detects the disconnect.
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            forwarder.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await forwarder


async def _forward_alerts(websocket: WebSocket, alerts: asyncio.Queue[Alert]) -> None:
    while True:
        alert = await alerts.get()
        await websocket.send_json(alert.to_record())
