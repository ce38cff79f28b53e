"""In-process queue with leases, for tests and single-process embedding."""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass
from typing import Callable, Optional

from flowcore.core.defaults import DEFAULT_LEASE_MS
from flowcore.core.logging import get_logger
from flowcore.core.queue.base import check_push_args
from flowcore.core.result_types import EngineResult, illegal_argument, not_found
from flowcore.core.types.result import Ok, is_err

logger = get_logger('queue')


@dataclass
class _Entry:
    item_id: str
    priority: int
    seq: int
    visible_at: float
    lease_expires_at: Optional[float] = None


class InMemoryQueue:
    """
    Per-name tables of entries, each ready, delayed or leased.

    Ready items are served highest priority first, then in push order.
    ``clock`` returns monotonic seconds; tests inject a fake one to expire
    leases and delays without sleeping.
    """

    def __init__(
        self,
        lease_ms: int = DEFAULT_LEASE_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.lease_ms = lease_ms
        self._clock = clock
        self._queues: dict[str, dict[str, _Entry]] = {}
        self._next_seq = itertools.count(1)
        # Reclaimed items take seqs below every pushed one so they go first.
        self._head_seq = itertools.count(-1, -1)
        self._lock = asyncio.Lock()

    def _is_ready(self, entry: _Entry, now: float) -> bool:
        return entry.lease_expires_at is None and entry.visible_at <= now

    def _put(self, queue_name: str, item_id: str, priority: int, delay_seconds: int) -> None:
        entries = self._queues.setdefault(queue_name, {})
        entry = entries.get(item_id)
        visible_at = self._clock() + delay_seconds
        if entry is None:
            entries[item_id] = _Entry(item_id, priority, next(self._next_seq), visible_at)
            return
        # Re-pushing keeps the item's place and drops any lease.
        entry.priority = priority
        entry.visible_at = visible_at
        entry.lease_expires_at = None

    async def push(
        self,
        queue_name: str,
        item_id: str,
        *,
        priority: int = 0,
        delay_seconds: int = 0,
    ) -> EngineResult[None]:
        checked = check_push_args(priority, delay_seconds)
        if is_err(checked):
            return checked
        async with self._lock:
            self._put(queue_name, item_id, priority, delay_seconds)
        return Ok(None)

    async def push_if_not_exists(
        self,
        queue_name: str,
        item_id: str,
        *,
        priority: int = 0,
        delay_seconds: int = 0,
    ) -> EngineResult[bool]:
        checked = check_push_args(priority, delay_seconds)
        if is_err(checked):
            return checked
        async with self._lock:
            if item_id in self._queues.get(queue_name, {}):
                return Ok(False)
            self._put(queue_name, item_id, priority, delay_seconds)
            return Ok(True)

    async def postpone(
        self,
        queue_name: str,
        item_id: str,
        delay_seconds: int,
        *,
        priority: int = 0,
    ) -> EngineResult[None]:
        checked = check_push_args(priority, delay_seconds)
        if is_err(checked):
            return checked
        async with self._lock:
            self._queues.get(queue_name, {}).pop(item_id, None)
            self._put(queue_name, item_id, priority, delay_seconds)
        return Ok(None)

    async def pop(self, queue_name: str) -> EngineResult[str]:
        popped = await self.batch_poll(queue_name, 1)
        if is_err(popped):
            return popped
        if not popped.ok_value:
            return not_found(f'Queue {queue_name} has no ready items')
        return Ok(popped.ok_value[0])

    async def batch_poll(self, queue_name: str, count: int) -> EngineResult[list[str]]:
        if count < 0:
            return illegal_argument(f'batch_poll count must be >= 0, got {count}')
        async with self._lock:
            entries = self._queues.get(queue_name)
            if not entries:
                return Ok([])
            now = self._clock()
            ready = sorted(
                (e for e in entries.values() if self._is_ready(e, now)),
                key=lambda e: (-e.priority, e.seq),
            )[:count]
            expiry = now + self.lease_ms / 1000.0
            for entry in ready:
                entry.lease_expires_at = expiry
            return Ok([entry.item_id for entry in ready])

    async def get_size(self, queue_name: str) -> EngineResult[int]:
        async with self._lock:
            now = self._clock()
            entries = self._queues.get(queue_name, {})
            return Ok(sum(1 for e in entries.values() if self._is_ready(e, now)))

    async def ack(self, queue_name: str, item_id: str) -> EngineResult[bool]:
        async with self._lock:
            return Ok(self._queues.get(queue_name, {}).pop(item_id, None) is not None)

    async def remove(self, queue_name: str, item_id: str) -> EngineResult[bool]:
        async with self._lock:
            return Ok(self._queues.get(queue_name, {}).pop(item_id, None) is not None)

    async def contains(self, queue_name: str, item_id: str) -> EngineResult[bool]:
        async with self._lock:
            return Ok(item_id in self._queues.get(queue_name, {}))

    async def reclaim_expired(self) -> EngineResult[int]:
        now = self._clock()
        reclaimed = 0
        async with self._lock:
            for entries in self._queues.values():
                expired = sorted(
                    (
                        e for e in entries.values()
                        if e.lease_expires_at is not None and e.lease_expires_at <= now
                    ),
                    key=lambda e: e.seq,
                )
                # Oldest claim ends up first in line.
                for entry in reversed(expired):
                    entry.lease_expires_at = None
                    entry.seq = next(self._head_seq)
                reclaimed += len(expired)
        if reclaimed:
            logger.info(f'Reclaimed {reclaimed} expired queue lease(s)')
        return Ok(reclaimed)

    async def sizes(self) -> EngineResult[dict[str, int]]:
        async with self._lock:
            now = self._clock()
            return Ok({
                name: sum(1 for e in entries.values() if self._is_ready(e, now))
                for name, entries in self._queues.items()
            })

    async def flush(self, queue_name: str) -> EngineResult[int]:
        async with self._lock:
            return Ok(len(self._queues.pop(queue_name, {})))
