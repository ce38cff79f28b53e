"""Queue provider interface consumed by the engine."""

from __future__ import annotations

from typing import Protocol

from flowcore.core.defaults import MAX_QUEUE_PRIORITY
from flowcore.core.result_types import EngineResult, illegal_argument
from flowcore.core.types.result import Ok


def check_push_args(priority: int, delay_seconds: int) -> EngineResult[None]:
    """ILLEGAL_ARGUMENT for a priority outside 0..MAX_QUEUE_PRIORITY or a negative delay."""
    if not 0 <= priority <= MAX_QUEUE_PRIORITY:
        return illegal_argument(
            f'queue priority must be between 0 and {MAX_QUEUE_PRIORITY}, got {priority}'
        )
    if delay_seconds < 0:
        return illegal_argument(f'queue delay must be >= 0 seconds, got {delay_seconds}')
    return Ok(None)


class QueueProvider(Protocol):
    """Named channels of TaskModel ids.

    Ready items are served highest priority first, then in push order. An
    item pushed with a delay is not ready until the delay has passed. Each
    item appears at most once per queue; pushing one that is already there
    updates its priority and delay and drops its lease.

    Delivery is at-least-once. ``pop``/``batch_poll`` move items in flight
    under a lease; ``ack`` removes them for good, and ``reclaim_expired``
    returns unacked items whose lease ran out to the head of their queue.
    Pushing onto an unknown queue creates it.
    """

    async def push(
        self,
        queue_name: str,
        item_id: str,
        *,
        priority: int = 0,
        delay_seconds: int = 0,
    ) -> EngineResult[None]: ...

    async def push_if_not_exists(
        self,
        queue_name: str,
        item_id: str,
        *,
        priority: int = 0,
        delay_seconds: int = 0,
    ) -> EngineResult[bool]:
        """Atomic push of an absent item. False when it is already ready, delayed or in flight."""
        ...

    async def postpone(
        self,
        queue_name: str,
        item_id: str,
        delay_seconds: int,
        *,
        priority: int = 0,
    ) -> EngineResult[None]:
        """Remove ``item_id`` and push it back so it is ready only after ``delay_seconds``."""
        ...

    async def pop(self, queue_name: str) -> EngineResult[str]:
        """Next ready item. NOT_FOUND when the queue has nothing ready."""
        ...

    async def batch_poll(self, queue_name: str, count: int) -> EngineResult[list[str]]:
        """Up to ``count`` ready items in serving order. Never blocks."""
        ...

    async def get_size(self, queue_name: str) -> EngineResult[int]:
        """Number of ready items (delayed and in-flight items are not counted)."""
        ...

    async def ack(self, queue_name: str, item_id: str) -> EngineResult[bool]:
        """Drop ``item_id`` from ``queue_name`` (ready or in flight); False if absent."""
        ...

    async def contains(self, queue_name: str, item_id: str) -> EngineResult[bool]:
        """Whether ``item_id`` is ready, delayed or in flight on ``queue_name``."""
        ...

    async def remove(self, queue_name: str, item_id: str) -> EngineResult[bool]: ...

    async def reclaim_expired(self) -> EngineResult[int]: ...

    async def sizes(self) -> EngineResult[dict[str, int]]:
        """Ready-item count of every known queue."""
        ...

    async def flush(self, queue_name: str) -> EngineResult[int]:
        """Drop every item of ``queue_name``; returns how many were dropped."""
        ...
