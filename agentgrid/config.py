"""Configuration management for the orchestration core."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass(frozen=True)
class ResourceDeclaration:
    """Resource declared at startup; capacity is fixed for the process lifetime."""

    resource_id: str
    type: str
    capacity: int

    @classmethod
    def parse(cls, text: str) -> ResourceDeclaration:
        """Parse ``id:type:capacity``."""
        parts = [p.strip() for p in text.split(":")]
        if len(parts) != 3:
            raise ValueError(f"Invalid resource declaration: {text!r}")
        return cls(resource_id=parts[0], type=parts[1], capacity=int(parts[2]))


@dataclass(frozen=True)
class AlertThreshold:
    """Threshold rule loaded from the environment as ``metric<op>value``."""

    metric: str
    comparison: str
    threshold: float

    @classmethod
    def parse(cls, text: str) -> AlertThreshold:
        for op in (">=", "<=", ">", "<"):
            metric, sep, value = text.partition(op)
            if sep:
                return cls(metric=metric.strip(), comparison=op, threshold=float(value))
        raise ValueError(f"Invalid alert threshold: {text!r}")


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_timeout(name: str, default: float) -> Optional[float]:
    """Seconds to wait; ``none`` means wait forever."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    if raw.lower() == "none":
        return None
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str) -> Tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    environment: str = "development"
    host: str = "0.0.0.0"
    port: int = 8000

    # Registry
    heartbeat_timeout: float = 15.0
    eviction_timeout: float = 300.0
    sweep_interval: float = 1.0

    # Scheduler
    scheduling_interval: float = 0.2
    unavailable_budget: int = 100
    reject_unadvertised: bool = True

    # Broker
    broker_queue_size: int = 256
    backpressure_policy: str = "block"
    send_timeout: Optional[float] = 5.0
    max_redeliveries: int = 3

    # Resource manager
    resource_timeout: Optional[float] = 30.0
    starvation_bound: float = 10.0

    # Coordinator / monitor
    coordination_window: float = 0.5
    metrics_interval: float = 5.0

    state_path: Optional[str] = None
    resources: Tuple[ResourceDeclaration, ...] = field(default_factory=tuple)
    alert_thresholds: Tuple[AlertThreshold, ...] = field(default_factory=tuple)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from ``AGENTGRID_*`` environment variables."""
        return cls(
            environment=os.getenv("ENVIRONMENT", "development"),
            host=os.getenv("AGENTGRID_HOST", "0.0.0.0"),
            port=_env_int("AGENTGRID_PORT", 8000),
            heartbeat_timeout=_env_float("AGENTGRID_HEARTBEAT_TIMEOUT", 15.0),
            eviction_timeout=_env_float("AGENTGRID_EVICTION_TIMEOUT", 300.0),
            sweep_interval=_env_float("AGENTGRID_SWEEP_INTERVAL", 1.0),
            scheduling_interval=_env_float("AGENTGRID_SCHEDULING_INTERVAL", 0.2),
            unavailable_budget=_env_int("AGENTGRID_UNAVAILABLE_BUDGET", 100),
            reject_unadvertised=_env_bool("AGENTGRID_REJECT_UNADVERTISED", True),
            broker_queue_size=_env_int("AGENTGRID_BROKER_QUEUE_SIZE", 256),
            backpressure_policy=os.getenv("AGENTGRID_BACKPRESSURE_POLICY", "block"),
            send_timeout=_env_timeout("AGENTGRID_SEND_TIMEOUT", 5.0),
            max_redeliveries=_env_int("AGENTGRID_MAX_REDELIVERIES", 3),
            resource_timeout=_env_timeout("AGENTGRID_RESOURCE_TIMEOUT", 30.0),
            starvation_bound=_env_float("AGENTGRID_STARVATION_BOUND", 10.0),
            coordination_window=_env_float("AGENTGRID_COORDINATION_WINDOW", 0.5),
            metrics_interval=_env_float("AGENTGRID_METRICS_INTERVAL", 5.0),
            state_path=os.getenv("AGENTGRID_STATE_PATH") or None,
            resources=tuple(
                ResourceDeclaration.parse(item) for item in _env_list("AGENTGRID_RESOURCES")
            ),
            alert_thresholds=tuple(
                AlertThreshold.parse(item) for item in _env_list("AGENTGRID_ALERTS")
            ),
        )


# Global config instance
config = Config.from_env()
