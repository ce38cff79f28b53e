# flowcore/core/reaper.py
"""
Periodic repair of task and queue state.

Delivery is at-least-once, so a crashed poller leaves work behind: leases
that were never acked, tasks stuck IN_PROGRESS, WAIT gates nobody closes,
and SCHEDULED tasks whose push never happened. ``Reaper.run_once`` fixes
each of those once; ``Reaper.run`` repeats it until stopped.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from flowcore.core.context import ExecutionContext
from flowcore.core.logging import get_logger
from flowcore.core.models.base import utc_now
from flowcore.core.models.config import ReaperConfig
from flowcore.core.models.task_model import TaskModel
from flowcore.core.result_types import EngineError, EngineErrorCode, EngineResult
from flowcore.core.tasks import TaskKindRecord
from flowcore.core.types.result import Err, Ok, is_err
from flowcore.core.types.status import TaskStatus, TaskType

logger = get_logger('reaper')

# Consecutive permanent failures after which a step is disabled for the
# lifetime of the loop.
MAX_PERMANENT_FAILURES = 3


def _queued_types() -> list[TaskType]:
    return sorted(
        (t for t in TaskKindRecord.registered_types() if TaskKindRecord.record_class_for(t).queued),
        key=lambda t: t.value,
    )


@dataclass
class ReaperReport:
    """Counts from one reaper pass. ``errors`` maps a step name to its failure."""

    reclaimed: int = 0
    timed_out: int = 0
    waits_completed: int = 0
    requeued: int = 0
    errors: dict[str, EngineError] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.reclaimed + self.timed_out + self.waits_completed + self.requeued


class Reaper:
    def __init__(
        self,
        config: Optional[ReaperConfig] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or ReaperConfig()
        self._clock = clock

    async def run_once(
        self,
        ctx: ExecutionContext,
        *,
        skip: frozenset[str] = frozenset(),
    ) -> ReaperReport:
        """One pass over every enabled step. A failing step does not stop the others."""
        report = ReaperReport()
        steps: list[tuple[str, bool, Callable[[ExecutionContext], Awaitable[EngineResult[int]]]]] = [
            ('reclaimed', self.config.reclaim_expired_leases, self.reclaim_leases),
            ('timed_out', self.config.auto_timeout_in_progress, self.timeout_in_progress),
            ('waits_completed', self.config.auto_complete_waits, self.complete_waits),
            ('requeued', self.config.requeue_orphaned_scheduled, self.requeue_orphans),
        ]
        for name, enabled, step in steps:
            if not enabled or name in skip:
                continue
            result = await step(ctx)
            if is_err(result):
                report.errors[name] = result.err_value
            else:
                setattr(report, name, result.ok_value)
        return report

    async def reclaim_leases(self, ctx: ExecutionContext) -> EngineResult[int]:
        return await ctx.queue.reclaim_expired()

    async def timeout_in_progress(self, ctx: ExecutionContext) -> EngineResult[int]:
        """TIMED_OUT for queued tasks IN_PROGRESS longer than their response timeout."""
        found = await ctx.store.find(
            TaskModel,
            {'status': TaskStatus.IN_PROGRESS, 'task_type': _queued_types()},
        )
        if is_err(found):
            return found
        now = self._clock()
        timed_out = 0
        for model in found.ok_value:
            started = model.start_time or model.scheduled_time
            if started + timedelta(seconds=model.response_timeout_seconds) > now:
                continue
            model.status = TaskStatus.TIMED_OUT
            model.reason_for_incompletion = (
                f'responseTimeout: {model.response_timeout_seconds}s exceeded '
                f'(worker {model.worker_id or "unknown"})'
            )
            model.end_time = now
            model.update_time = now
            written = await self._write(ctx, model)
            if is_err(written):
                return written
            if written.ok_value:
                timed_out += 1
                acked = await ctx.queue.ack(model.queue_name(), model.id)
                if is_err(acked):
                    return acked
        return Ok(timed_out)

    async def complete_waits(self, ctx: ExecutionContext) -> EngineResult[int]:
        """COMPLETED for WAIT tasks whose wait_timeout has passed."""
        found = await ctx.store.find(
            TaskModel, {'status': TaskStatus.IN_PROGRESS, 'task_type': TaskType.WAIT}
        )
        if is_err(found):
            return found
        now = self._clock()
        completed = 0
        for model in found.ok_value:
            if model.wait_timeout is None or model.wait_timeout > now.timestamp():
                continue
            model.status = TaskStatus.COMPLETED
            model.end_time = now
            model.update_time = now
            model.executed = True
            written = await self._write(ctx, model)
            if is_err(written):
                return written
            completed += int(written.ok_value)
        return Ok(completed)

    async def requeue_orphans(self, ctx: ExecutionContext) -> EngineResult[int]:
        """Re-push SCHEDULED queued tasks older than orphan_grace_ms that no queue holds."""
        found = await ctx.store.find(
            TaskModel,
            {'status': TaskStatus.SCHEDULED, 'task_type': _queued_types()},
            order_by='scheduled_time',
        )
        if is_err(found):
            return found
        cutoff = self._clock() - timedelta(milliseconds=self.config.orphan_grace_ms)
        requeued = 0
        for model in found.ok_value:
            if model.scheduled_time > cutoff:
                continue
            pushed = await ctx.queue.push_if_not_exists(
                model.queue_name(), model.id, priority=model.workflow_priority
            )
            if is_err(pushed):
                return pushed
            requeued += int(pushed.ok_value)
        return Ok(requeued)

    async def _write(self, ctx: ExecutionContext, model: TaskModel) -> EngineResult[bool]:
        """Versioned write; Ok(False) when someone else changed the task first."""
        updated = await ctx.store.update(model)
        if is_err(updated):
            if updated.err_value.code is EngineErrorCode.CONFLICT:
                logger.debug(f'Task {model.id} changed under the reaper; leaving it')
                return Ok(False)
            return Err(updated.err_value)
        return Ok(True)

    async def run(self, ctx: ExecutionContext, stop_event: asyncio.Event) -> None:
        """Run passes every ``check_interval_ms`` until ``stop_event`` is set.

        Retryable errors are logged and retried next cycle. A step failing
        permanently ``MAX_PERMANENT_FAILURES`` times in a row is disabled.
        """
        interval_s = self.config.check_interval_ms / 1000.0
        permanent_failures: dict[str, int] = {}
        disabled: set[str] = set()

        logger.info(
            f'Reaper configuration: reclaim_leases={self.config.reclaim_expired_leases}, '
            f'timeout_in_progress={self.config.auto_timeout_in_progress}, '
            f'complete_waits={self.config.auto_complete_waits}, '
            f'requeue_orphans={self.config.requeue_orphaned_scheduled}, '
            f'check_interval={self.config.check_interval_ms}ms ({interval_s:.1f}s)'
        )

        while not stop_event.is_set():
            try:
                report = await self.run_once(ctx, skip=frozenset(disabled))
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception('Reaper pass crashed; retrying next cycle')
            else:
                for name in ('reclaimed', 'timed_out', 'waits_completed', 'requeued'):
                    match report.errors.get(name):
                        case None:
                            permanent_failures[name] = 0
                            count = getattr(report, name)
                            if count > 0:
                                logger.info(f'Reaper {name} {count} task(s)')
                        case err if err.retryable:
                            permanent_failures[name] = 0
                            logger.warning(
                                f'Reaper {name} transient failure '
                                f'(will retry next cycle): {err.message}'
                            )
                        case err:
                            permanent_failures[name] = permanent_failures.get(name, 0) + 1
                            if permanent_failures[name] >= MAX_PERMANENT_FAILURES:
                                disabled.add(name)
                                logger.critical(
                                    f'Reaper {name} disabled after {permanent_failures[name]} '
                                    f'consecutive permanent failures. Last error: {err.message}'
                                )
                            else:
                                logger.error(f'Reaper {name} permanent failure: {err.message}')

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                pass

        logger.info('Reaper stopped')
