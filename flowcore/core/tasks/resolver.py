# flowcore/core/tasks/resolver.py
"""Task-type resolution: TaskConfig -> validated kind record -> executed TaskModel.

``resolve`` runs the persistence steps (save config, create TaskModel and
kind record, plus every child a fan-out kind spawns) as one unit of work and
pushes spawned children onto their queues only after the unit commits. A
failure anywhere in the unit leaves nothing behind.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from flowcore.core.logging import get_logger
from flowcore.core.models.task_config import TaskConfig
from flowcore.core.queue.base import check_push_args
from flowcore.core.result_types import EngineError, EngineResult, not_implemented
from flowcore.core.tasks.base import TaskKindRecord
from flowcore.core.types.result import Err, Ok, is_err
from flowcore.core.types.status import UNIMPLEMENTED_TASK_TYPES

if TYPE_CHECKING:
    from flowcore.core.context import ExecutionContext

logger = get_logger('resolver')


def to_task(
    config: TaskConfig,
    *,
    workflow_instance_id: Optional[str] = None,
    iteration: int = 0,
    priority: int = 0,
) -> EngineResult[TaskKindRecord]:
    """Validate ``config`` into its kind record without touching storage.

    The unimplemented kinds (HUMAN, USER_DEFINED, KAFKA_PUBLISH,
    EXCLUSIVE_JOIN) fail here with NOT_IMPLEMENTED. ``priority`` (0-99) is
    the workflow priority its TaskModel and queue entry carry.
    """
    if config.task_type in UNIMPLEMENTED_TASK_TYPES:
        return not_implemented(f'{config.task_type.value} task is not implemented')
    checked = check_push_args(priority, config.start_delay)
    if is_err(checked):
        return checked
    record_cls = TaskKindRecord.record_class_for(config.task_type)
    return record_cls.from_config(
        config,
        workflow_instance_id=workflow_instance_id,
        iteration=iteration,
        priority=priority,
    )


async def resolve_in_unit(
    config: TaskConfig,
    ctx: ExecutionContext,
    *,
    workflow_instance_id: Optional[str] = None,
    iteration: int = 0,
    priority: int = 0,
) -> EngineResult[TaskKindRecord]:
    """Persist and execute ``config`` inside the caller's unit of work.

    Nothing is queued. Fan-out kinds call this for their children; the
    outermost ``resolve`` queues the whole spawned tree after commit.
    """
    built = to_task(
        config,
        workflow_instance_id=workflow_instance_id,
        iteration=iteration,
        priority=priority,
    )
    if is_err(built):
        return built
    return await persist_record(built.ok_value, ctx)


async def persist_record(
    record: TaskKindRecord, ctx: ExecutionContext
) -> EngineResult[TaskKindRecord]:
    """Save the bound config (secrets redacted), then execute ``record``. No queueing."""
    saved = await ctx.store.save(record.stored_config())
    if is_err(saved):
        return saved
    executed = await record.execute(ctx)
    if is_err(executed):
        return executed
    return Ok(record)


async def resolve(
    config: TaskConfig,
    ctx: ExecutionContext,
    *,
    workflow_instance_id: Optional[str] = None,
    iteration: int = 0,
    priority: int = 0,
) -> EngineResult[TaskKindRecord]:
    """Resolve ``config`` into an executed kind record.

    The record itself is not queued (see ``schedule``); children spawned by
    fan-out kinds are.
    """
    built = to_task(
        config,
        workflow_instance_id=workflow_instance_id,
        iteration=iteration,
        priority=priority,
    )
    if is_err(built):
        logger.warning(
            f'Rejected {config.task_type.value} task {config.task_reference_name!r}: '
            f'{built.err_value.message}'
        )
        return built

    record = built.ok_value
    resolved = await ctx.store.atomic(lambda: persist_record(record, ctx))
    if is_err(resolved):
        logger.error(
            f'Resolving {config.task_type.value} task {config.task_reference_name!r} '
            f'failed: {resolved.err_value.message}'
        )
        return resolved

    dispatched = await dispatch_spawned(record, ctx)
    if is_err(dispatched):
        return dispatched
    return Ok(record)


async def schedule(
    config: TaskConfig,
    ctx: ExecutionContext,
    *,
    workflow_instance_id: Optional[str] = None,
    iteration: int = 0,
    priority: int = 0,
) -> EngineResult[TaskKindRecord]:
    """``resolve`` plus ``add_to_queue`` for kinds handed to external pollers."""
    resolved = await resolve(
        config,
        ctx,
        workflow_instance_id=workflow_instance_id,
        iteration=iteration,
        priority=priority,
    )
    if is_err(resolved):
        return resolved
    record = resolved.ok_value
    if record.queued:
        pushed = await record.add_to_queue(ctx)
        if is_err(pushed):
            return pushed
    return Ok(record)


async def dispatch_spawned(
    record: TaskKindRecord, ctx: ExecutionContext
) -> EngineResult[None]:
    """Queue every queued-kind descendant of ``record``, depth first.

    Keeps going after a push failure so one bad push does not strand the
    remaining siblings; the first error is returned. Tasks whose push failed
    are still SCHEDULED and get re-pushed by the reaper.
    """
    first_error: Optional[EngineError] = None
    pending = list(reversed(record.spawned))
    while pending:
        child = pending.pop()
        if child.queued:
            pushed = await child.add_to_queue(ctx)
            if is_err(pushed):
                logger.warning(
                    f'Could not queue {child.task_type.value} task {child.task_model_id}: '
                    f'{pushed.err_value.message} (reaper will re-push it)'
                )
                first_error = first_error or pushed.err_value
        pending.extend(reversed(child.spawned))
    if first_error is not None:
        return Err(first_error)
    return Ok(None)
