"""Allocation of finite shared resources with priority-ordered grants."""
from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional

import structlog

from agentgrid.core.errors import (
    DuplicateResource,
    InvalidAmount,
    OverRelease,
    ResourceTimeout,
    UnknownResource,
)
from agentgrid.core.models import Resource

log = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = object()


class AllocationStatus(Enum):
    GRANTED = "granted"
    QUEUED = "queued"


class _RequestState(Enum):
    PENDING = "pending"
    GRANTED = "granted"
    WITHDRAWN = "withdrawn"


@dataclass(eq=False)
class PendingRequest:
    """A request waiting for capacity on one resource."""

    request_id: int
    holder_id: str
    resource_id: str
    amount: int
    priority: int
    arrived_at: float
    promotions: int = 0
    state: _RequestState = _RequestState.PENDING
    settled: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def effective_priority(self) -> int:
        return self.priority + self.promotions


class ResourceManager:
    """Owns the allocation ledger of every declared resource.

    Grants are made in order of effective priority (descending) then arrival.
    The head of the line blocks smaller requests behind it, so a large
    request is never overtaken indefinitely. Requests waiting longer than
    ``starvation_bound`` gain one priority tier per elapsed bound.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        request_timeout: Optional[float] = None,
        starvation_bound: Optional[float] = None,
    ) -> None:
        self._clock = clock
        self._request_timeout = request_timeout
        self._starvation_bound = starvation_bound
        self._resources: Dict[str, Resource] = {}
        self._pending: Dict[str, List[PendingRequest]] = {}
        self._arrivals = itertools.count(1)

    def declare(self, resource_id: str, type: str, capacity: int) -> Resource:
        """Declare a resource at configuration time; capacity is then fixed."""
        if resource_id in self._resources:
            raise DuplicateResource(f"Resource '{resource_id}' is already declared")
        if capacity <= 0:
            raise InvalidAmount(f"Capacity must be positive, got {capacity}")
        self._resources[resource_id] = Resource(resource_id=resource_id, type=type, capacity=capacity)
        self._pending[resource_id] = []
        log.info("resource_declared", resource_id=resource_id, type=type, capacity=capacity)
        return self.get(resource_id)

    async def request(
        self,
        holder_id: str,
        resource_id: str,
        amount: int,
        *,
        priority: int = 0,
        wait: bool = True,
        timeout: Optional[float] = DEFAULT_TIMEOUT,  # type: ignore[assignment]
    ) -> AllocationStatus:
        """Ask for ``amount`` units of a resource.

        Requests issued within the same event-loop turn are arbitrated
        together. With ``wait=False`` an unsatisfied request stays queued and
        ``QUEUED`` is returned; otherwise the caller suspends until granted or
        until ``timeout`` elapses, which raises ``ResourceTimeout``.
        """
        pending = self.enqueue(holder_id, resource_id, amount, priority=priority)
        await asyncio.sleep(0)
        self._arbitrate(resource_id)

        if pending.state is _RequestState.GRANTED:
            return AllocationStatus.GRANTED
        if not wait and pending.state is _RequestState.PENDING:
            return AllocationStatus.QUEUED

        timeout = self._request_timeout if timeout is DEFAULT_TIMEOUT else timeout
        try:
            await asyncio.wait_for(pending.settled.wait(), timeout)
        except asyncio.TimeoutError:
            if pending.state is _RequestState.GRANTED:
                return AllocationStatus.GRANTED
            self._withdraw(pending)
            self._arbitrate(resource_id)
            log.warning(
                "resource_request_timed_out",
                holder_id=holder_id,
                resource_id=resource_id,
                amount=amount,
                timeout=timeout,
            )
            raise ResourceTimeout(
                f"'{holder_id}' waited more than {timeout}s for {amount} of '{resource_id}'"
            ) from None
        except asyncio.CancelledError:
            if pending.state is _RequestState.PENDING:
                self._withdraw(pending)
                self._arbitrate(resource_id)
            raise

        if pending.state is _RequestState.WITHDRAWN:
            raise ResourceTimeout(f"Request by '{holder_id}' for '{resource_id}' was withdrawn")
        return AllocationStatus.GRANTED

    def enqueue(
        self, holder_id: str, resource_id: str, amount: int, *, priority: int = 0
    ) -> PendingRequest:
        """Validate and queue a request without arbitrating; never suspends."""
        resource = self._require(resource_id)
        if amount <= 0 or amount > resource.capacity:
            raise InvalidAmount(
                f"Amount {amount} is outside 1..{resource.capacity} for '{resource_id}'"
            )
        pending = PendingRequest(
            request_id=next(self._arrivals),
            holder_id=holder_id,
            resource_id=resource_id,
            amount=amount,
            priority=priority,
            arrived_at=self._clock(),
        )
        self._pending[resource_id].append(pending)
        log.debug(
            "resource_requested",
            holder_id=holder_id,
            resource_id=resource_id,
            amount=amount,
            priority=priority,
        )
        return pending

    def release(self, holder_id: str, resource_id: str, amount: int) -> None:
        resource = self._require(resource_id)
        if amount <= 0:
            raise InvalidAmount(f"Release amount must be positive, got {amount}")
        held = resource.ledger.get(holder_id, 0)
        if amount > held:
            raise OverRelease(
                f"'{holder_id}' holds {held} of '{resource_id}', cannot release {amount}"
            )
        if held == amount:
            del resource.ledger[holder_id]
        else:
            resource.ledger[holder_id] = held - amount
        log.info("resource_released", holder_id=holder_id, resource_id=resource_id, amount=amount)
        self._arbitrate(resource_id)

    def release_all(self, holder_id: str) -> Dict[str, int]:
        """Drop every holding and pending request of a holder (e.g. an agent gone offline)."""
        released: Dict[str, int] = {}
        touched: List[str] = []
        for resource_id, resource in self._resources.items():
            for pending in [p for p in self._pending[resource_id] if p.holder_id == holder_id]:
                self._withdraw(pending)
                touched.append(resource_id)
            amount = resource.ledger.pop(holder_id, 0)
            if amount:
                released[resource_id] = amount
        if released:
            log.info("resource_holder_reclaimed", holder_id=holder_id, released=released)
        for resource_id in set(released) | set(touched):
            self._arbitrate(resource_id)
        return released

    def rebalance(self) -> None:
        """Apply starvation promotions and grant whatever now fits."""
        for resource_id in self._resources:
            if self._pending[resource_id]:
                self._arbitrate(resource_id)

    def get(self, resource_id: str) -> Resource:
        resource = self._require(resource_id)
        return replace(resource, ledger=dict(resource.ledger))

    def list(self) -> List[Resource]:
        return [replace(r, ledger=dict(r.ledger)) for r in self._resources.values()]

    def holdings(self, holder_id: str) -> Dict[str, int]:
        return {
            rid: r.ledger[holder_id] for rid, r in self._resources.items() if holder_id in r.ledger
        }

    def pending(self, resource_id: str) -> List[PendingRequest]:
        self._require(resource_id)
        return list(self._pending[resource_id])

    def utilization(self, resource_id: str) -> float:
        return self._require(resource_id).utilization

    def _arbitrate(self, resource_id: str) -> List[PendingRequest]:
        resource = self._resources[resource_id]
        queue = self._pending[resource_id]
        self._promote(queue)
        queue.sort(key=lambda p: (-p.effective_priority, p.request_id))

        granted: List[PendingRequest] = []
        while queue and queue[0].amount <= resource.available:
            pending = queue.pop(0)
            resource.ledger[pending.holder_id] = (
                resource.ledger.get(pending.holder_id, 0) + pending.amount
            )
            pending.state = _RequestState.GRANTED
            pending.settled.set()
            granted.append(pending)
            log.info(
                "resource_granted",
                holder_id=pending.holder_id,
                resource_id=resource_id,
                amount=pending.amount,
                priority=pending.effective_priority,
            )
        return granted

    def _promote(self, queue: List[PendingRequest]) -> None:
        if not self._starvation_bound:
            return
        now = self._clock()
        for pending in queue:
            tiers = int((now - pending.arrived_at) // self._starvation_bound)
            if tiers > pending.promotions:
                pending.promotions = tiers
                log.info(
                    "resource_request_promoted",
                    holder_id=pending.holder_id,
                    resource_id=pending.resource_id,
                    effective_priority=pending.effective_priority,
                )

    def _withdraw(self, pending: PendingRequest) -> None:
        queue = self._pending.get(pending.resource_id, [])
        if pending in queue:
            queue.remove(pending)
        pending.state = _RequestState.WITHDRAWN
        pending.settled.set()

    def _require(self, resource_id: str) -> Resource:
        resource = self._resources.get(resource_id)
        if resource is None:
            raise UnknownResource(f"Resource '{resource_id}' is not declared")
        return resource
