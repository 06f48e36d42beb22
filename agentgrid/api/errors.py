"""Mapping of the core error taxonomy onto HTTP responses."""
from __future__ import annotations

from typing import Dict, Type

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from agentgrid.core import errors

ERROR_STATUS: Dict[Type[errors.OrchestrationError], int] = {
    errors.DuplicateAgent: status.HTTP_409_CONFLICT,
    errors.DuplicateTask: status.HTTP_409_CONFLICT,
    errors.DuplicateResource: status.HTTP_409_CONFLICT,
    errors.UnknownAgent: status.HTTP_404_NOT_FOUND,
    errors.UnknownTask: status.HTTP_404_NOT_FOUND,
    errors.UnknownResource: status.HTTP_404_NOT_FOUND,
    errors.InvalidAmount: status.HTTP_422_UNPROCESSABLE_ENTITY,
    errors.CapabilityMismatch: status.HTTP_422_UNPROCESSABLE_ENTITY,
    errors.OverRelease: status.HTTP_409_CONFLICT,
    errors.InvalidTransition: status.HTTP_409_CONFLICT,
    errors.ProposalConflict: status.HTTP_409_CONFLICT,
    errors.DeadlineExceeded: status.HTTP_410_GONE,
    errors.ResourceTimeout: status.HTTP_503_SERVICE_UNAVAILABLE,
    errors.QueueFull: status.HTTP_503_SERVICE_UNAVAILABLE,
    errors.AgentUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(exc: errors.OrchestrationError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def orchestration_error_handler(request: Request, exc: errors.OrchestrationError) -> JSONResponse:
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=status_for(exc),
        content={"error": exc.code, "detail": exc.message, "retryable": exc.retryable},
        headers=headers,
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(errors.OrchestrationError, orchestration_error_handler)
