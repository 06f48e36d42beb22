"""FastAPI entry-point exposing orchestrator controls."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from agentgrid.api.agents import router as agents_router
from agentgrid.api.errors import install_error_handlers
from agentgrid.api.monitoring import router as monitoring_router
from agentgrid.api.proposals import router as proposals_router
from agentgrid.api.resources import router as resources_router
from agentgrid.api.tasks import router as tasks_router
from agentgrid.core.observability import configure_structlog
from agentgrid.orchestration.orchestrator import Orchestrator
from agentgrid.runtime import get_orchestrator, get_settings


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """Build the application, optionally around an existing orchestrator."""

    def current() -> Orchestrator:
        return orchestrator if orchestrator is not None else get_orchestrator()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for FastAPI application."""
        settings = get_settings()
        configure_structlog(settings.environment)
        runtime = current()
        runtime.load_state()
        await runtime.start()
        yield
        await runtime.stop()
        runtime.save_state()

    app = FastAPI(title="Agent Orchestration Core", lifespan=lifespan)
    app.include_router(agents_router)
    app.include_router(tasks_router)
    app.include_router(resources_router)
    app.include_router(proposals_router)
    app.include_router(monitoring_router)
    install_error_handlers(app)
    if orchestrator is not None:
        app.dependency_overrides[get_orchestrator] = current

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()


def serve() -> None:
    settings = get_settings()
    uvicorn.run(
        "agentgrid.main:app",
        host=settings.host,
        port=settings.port,
        log_level="info",
    )


if __name__ == "__main__":
    serve()
