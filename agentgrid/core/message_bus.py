"""In-memory broker delivering messages between agents with per-pair ordering."""
from __future__ import annotations

import asyncio
import contextlib
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from dataclasses import replace
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

import structlog

from .errors import QueueFull
from .models import Message

log = structlog.get_logger(__name__)

Handler = Callable[[Message], Awaitable[None]]


class BackpressurePolicy(Enum):
    """What ``send`` does when the recipient's mailbox is saturated."""

    BLOCK = "block"
    FAIL = "fail"


class MessageBroker:
    """Async message hub enabling agent-to-agent communication.

    Each recipient owns a bounded mailbox. Messages for a sender→recipient
    pair are stamped with a monotonic sequence number and enqueued under a
    per-pair lock, so they are delivered in sequence order. Delivery to
    subscription handlers is at-least-once: a handler that raises sees the
    same message again before the next one. Deduplication is left to the
    recipient (sequence number plus correlation id).
    """

    def __init__(
        self,
        *,
        max_queue_size: int = 256,
        policy: BackpressurePolicy = BackpressurePolicy.BLOCK,
        send_timeout: Optional[float] = 5.0,
        max_redeliveries: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")
        self._max_queue_size = max_queue_size
        self._policy = policy
        self._send_timeout = send_timeout
        self._max_redeliveries = max_redeliveries
        self._clock = clock
        self._mailboxes: Dict[str, asyncio.Queue[Message]] = {}
        self._sequences: Dict[Tuple[str, str], int] = defaultdict(int)
        self._pair_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._subscriptions: Dict[str, asyncio.Task[None]] = {}
        self._dead_letters: Deque[Message] = deque(maxlen=100)
        self._lock = asyncio.Lock()

    @property
    def policy(self) -> BackpressurePolicy:
        return self._policy

    @property
    def dead_letters(self) -> List[Message]:
        return list(self._dead_letters)

    async def register(self, agent_id: str) -> None:
        """Ensure a mailbox exists for the agent."""
        async with self._lock:
            if agent_id not in self._mailboxes:
                self._mailboxes[agent_id] = asyncio.Queue(maxsize=self._max_queue_size)

    async def unregister(self, agent_id: str) -> None:
        """Remove the mailbox to stop further deliveries."""
        await self.unsubscribe(agent_id)
        async with self._lock:
            self._mailboxes.pop(agent_id, None)
            for pair in [p for p in self._pair_locks if agent_id in p]:
                self._pair_locks.pop(pair, None)
            for pair in [p for p in self._sequences if agent_id in p]:
                del self._sequences[pair]

    def recipients(self) -> List[str]:
        return list(self._mailboxes)

    async def send(self, message: Message) -> Optional[Message]:
        """Deliver to the recipient's mailbox, or broadcast when addressed to ``*``.

        Returns the stamped message, or ``None`` when the recipient is unknown.
        Raises ``QueueFull`` when the mailbox stays saturated.
        """
        if message.is_broadcast:
            await self.broadcast(message)
            return None

        queue = self._mailboxes.get(message.recipient_id)
        if queue is None:
            log.warning(
                "message_dropped",
                reason="unknown_recipient",
                sender_id=message.sender_id,
                recipient_id=message.recipient_id,
            )
            return None
        return await self._enqueue(message, message.recipient_id, queue)

    async def broadcast(self, message: Message) -> List[Message]:
        """Deliver to every registered mailbox except the sender's.

        Saturated recipients do not stop delivery to the others; they are
        reported together in a single ``QueueFull`` afterwards.
        """
        delivered: List[Message] = []
        saturated: List[str] = []
        for agent_id, queue in list(self._mailboxes.items()):
            if agent_id == message.sender_id:
                continue
            try:
                delivered.append(await self._enqueue(message, agent_id, queue))
            except QueueFull:
                saturated.append(agent_id)
        if saturated:
            raise QueueFull(f"Mailboxes saturated: {', '.join(sorted(saturated))}")
        return delivered

    async def subscribe(self, agent_id: str, handler: Handler) -> None:
        """Drain the agent's mailbox into ``handler`` on a background task."""
        await self.register(agent_id)
        if agent_id in self._subscriptions:
            raise ValueError(f"Agent '{agent_id}' already has a subscription")
        queue = self._mailboxes[agent_id]
        self._subscriptions[agent_id] = asyncio.create_task(
            self._dispatch(agent_id, queue, handler), name=f"broker-dispatch-{agent_id}"
        )

    async def receive(
        self, agent_id: str, *, max_messages: int = 32, timeout: float = 0.0
    ) -> List[Message]:
        """Take up to ``max_messages`` from the agent's mailbox, oldest first.

        Used by agents that poll instead of subscribing. With a positive
        ``timeout`` an empty mailbox is awaited that long for its first message.
        """
        queue = self._mailboxes.get(agent_id)
        if queue is None:
            return []
        messages: List[Message] = []
        if queue.empty() and timeout > 0:
            try:
                messages.append(await asyncio.wait_for(queue.get(), timeout=timeout))
            except asyncio.TimeoutError:
                return []
        while len(messages) < max_messages and not queue.empty():
            messages.append(queue.get_nowait())
        return messages

    async def unsubscribe(self, agent_id: str) -> None:
        task = self._subscriptions.pop(agent_id, None)
        if task is None:
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def close(self) -> None:
        """Stop every subscription task."""
        for agent_id in list(self._subscriptions):
            await self.unsubscribe(agent_id)

    @asynccontextmanager
    async def deliver(self, agent_id: str) -> AsyncIterator[asyncio.Queue[Message]]:
        """Context manager yielding the agent's mailbox queue."""
        await self.register(agent_id)
        try:
            yield self._mailboxes[agent_id]
        finally:
            await self.unregister(agent_id)

    def saturation(self, agent_id: str) -> float:
        """Fraction of the mailbox currently occupied."""
        queue = self._mailboxes.get(agent_id)
        if queue is None:
            return 0.0
        return queue.qsize() / self._max_queue_size

    def saturation_snapshot(self) -> Dict[str, float]:
        return {agent_id: self.saturation(agent_id) for agent_id in self._mailboxes}

    async def _enqueue(
        self, message: Message, recipient_id: str, queue: asyncio.Queue[Message]
    ) -> Message:
        pair = (message.sender_id, recipient_id)
        lock = self._pair_locks.setdefault(pair, asyncio.Lock())
        async with lock:
            stamped = replace(
                message,
                recipient_id=recipient_id,
                sequence=self._sequences[pair] + 1,
                sent_at=self._clock(),
            )
            await self._put(queue, stamped)
            # Only advance once enqueued so a failed send leaves no gap.
            self._sequences[pair] = stamped.sequence
        return stamped

    async def _put(self, queue: asyncio.Queue[Message], message: Message) -> None:
        if self._policy is BackpressurePolicy.FAIL:
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                raise QueueFull(f"Mailbox for '{message.recipient_id}' is full") from None
            return

        try:
            await asyncio.wait_for(queue.put(message), timeout=self._send_timeout)
        except asyncio.TimeoutError:
            raise QueueFull(
                f"Mailbox for '{message.recipient_id}' stayed full for {self._send_timeout}s"
            ) from None

    async def _dispatch(
        self, agent_id: str, queue: asyncio.Queue[Message], handler: Handler
    ) -> None:
        while True:
            message = await queue.get()
            attempt = 0
            while True:
                try:
                    await handler(message)
                    break
                except Exception as exc:  # noqa: BLE001
                    attempt += 1
                    if attempt > self._max_redeliveries:
                        log.error(
                            "message_dead_lettered",
                            recipient_id=agent_id,
                            sender_id=message.sender_id,
                            sequence=message.sequence,
                            error=str(exc),
                        )
                        self._dead_letters.append(message)
                        break
                    log.warning(
                        "message_redelivered",
                        recipient_id=agent_id,
                        sender_id=message.sender_id,
                        sequence=message.sequence,
                        attempt=attempt,
                        error=str(exc),
                    )
            queue.task_done()
