"""Metric collection and threshold alerting."""
from __future__ import annotations

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Deque, Dict, List, Optional, Set, Tuple

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from agentgrid.core.models import Alert, MetricSample, ThresholdRule

log = structlog.get_logger(__name__)

AlertListener = Callable[[Alert], None]

# Content type for the Prometheus exposition endpoint
METRICS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class Monitor:
    """Keeps the latest sample per (source, metric) and evaluates rules.

    A rule fires once when a source crosses into breach and re-arms when the
    metric comes back within bounds. Alerts are pushed to listeners and
    stream subscribers; the monitor never acts on them itself.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        registry: Optional[CollectorRegistry] = None,
        history: int = 256,
    ) -> None:
        self._clock = clock
        self._registry = registry or CollectorRegistry()
        self._latest: Dict[Tuple[str, str], MetricSample] = {}
        self._rules: List[ThresholdRule] = []
        self._breached: Set[Tuple[ThresholdRule, str]] = set()
        self._alerts: Deque[Alert] = deque(maxlen=history)
        self._listeners: List[AlertListener] = []
        self._streams: List[asyncio.Queue[Alert]] = []

        self.samples_gauge = Gauge(
            name="agentgrid_metric",
            documentation="Latest metric sample pushed to the monitor",
            labelnames=["source", "name"],
            registry=self._registry,
        )
        self.alerts_total = Counter(
            name="agentgrid_alerts_total",
            documentation="Alerts emitted by the monitor",
            labelnames=["component", "metric"],
            registry=self._registry,
        )

    def add_rule(self, rule: ThresholdRule) -> None:
        self._rules.append(rule)

    @property
    def rules(self) -> List[ThresholdRule]:
        return list(self._rules)

    def add_listener(self, listener: AlertListener) -> None:
        self._listeners.append(listener)

    def record(self, sample: MetricSample) -> None:
        self._latest[(sample.source, sample.name)] = sample
        self.samples_gauge.labels(source=sample.source, name=sample.name).set(sample.value)
        self._evaluate(sample)

    def record_value(self, source: str, name: str, value: float) -> MetricSample:
        sample = MetricSample(source=source, name=name, value=float(value), timestamp=self._clock())
        self.record(sample)
        return sample

    def latest(self) -> List[MetricSample]:
        return [self._latest[key] for key in sorted(self._latest)]

    def alerts(self, limit: Optional[int] = None) -> List[Alert]:
        alerts = list(self._alerts)
        return alerts[-limit:] if limit else alerts

    def raise_alert(
        self,
        component: str,
        metric: str,
        value: float,
        reason: str,
        threshold: Optional[float] = None,
    ) -> Alert:
        """Escalate a condition that is not expressed as a threshold rule."""
        alert = Alert(
            metric=metric,
            value=float(value),
            threshold=threshold,
            component=component,
            reason=reason,
            timestamp=self._clock(),
        )
        self._emit(alert)
        return alert

    @asynccontextmanager
    async def stream_alerts(self, max_pending: int = 100) -> AsyncIterator[asyncio.Queue[Alert]]:
        """Context manager yielding a queue that receives every new alert."""
        queue: asyncio.Queue[Alert] = asyncio.Queue(maxsize=max_pending)
        self._streams.append(queue)
        try:
            yield queue
        finally:
            self._streams.remove(queue)

    def export_prometheus(self) -> bytes:
        return generate_latest(self._registry)

    def _evaluate(self, sample: MetricSample) -> None:
        for rule in self._rules:
            if not rule.matches(sample):
                continue
            key = (rule, sample.source)
            if rule.breached(sample.value):
                if key in self._breached:
                    continue
                self._breached.add(key)
                self._emit(
                    Alert(
                        metric=sample.name,
                        value=sample.value,
                        threshold=rule.threshold,
                        component=sample.source,
                        reason=f"{sample.name} {rule.comparison} {rule.threshold}",
                        timestamp=sample.timestamp,
                    )
                )
            else:
                self._breached.discard(key)

    def _emit(self, alert: Alert) -> None:
        self._alerts.append(alert)
        self.alerts_total.labels(component=alert.component, metric=alert.metric).inc()
        log.warning(
            "alert_raised",
            component=alert.component,
            metric=alert.metric,
            value=alert.value,
            threshold=alert.threshold,
            reason=alert.reason,
        )
        for queue in self._streams:
            try:
                queue.put_nowait(alert)
            except asyncio.QueueFull:
                log.warning("alert_stream_lagging", metric=alert.metric)
        for listener in self._listeners:
            listener(alert)
