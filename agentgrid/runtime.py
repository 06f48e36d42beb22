"""Application runtime composition helpers."""
from __future__ import annotations

from functools import lru_cache

from agentgrid.config import Config, config
from agentgrid.orchestration.orchestrator import Orchestrator


@lru_cache
def get_settings() -> Config:
    return config


@lru_cache
def get_orchestrator() -> Orchestrator:
    return Orchestrator.build(get_settings())
