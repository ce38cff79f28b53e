# flowcore/core/service.py
"""
TaskService: the operations a transport layer exposes to workers.

Polling claims TaskModels off their type queue, updates move them through
the status machine, and the read side serves logs, poll data and queue
sizes. Every method returns ``EngineResult``.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from flowcore.core.context import ExecutionContext
from flowcore.core.logging import get_logger
from flowcore.core.models.base import utc_now
from flowcore.core.models.logs import PollData, TaskExecutionLog
from flowcore.core.models.task_model import TaskModel, TaskUpdate, queue_name_for
from flowcore.core.result_types import (
    EngineErrorCode,
    EngineResult,
    conflict,
    illegal_argument,
    not_found,
    not_implemented,
)
from flowcore.core.tasks import JoinRecord, TaskKindRecord
from flowcore.core.types.result import Ok, is_err
from flowcore.core.types.status import (
    UNIMPLEMENTED_TASK_TYPES,
    TaskStatus,
    TaskType,
    can_transition,
)


def _is_queued_kind(task_type: TaskType) -> bool:
    if task_type in UNIMPLEMENTED_TASK_TYPES:
        return False
    return TaskKindRecord.record_class_for(task_type).queued


class TaskService:
    """Worker-facing task operations over one ExecutionContext."""

    def __init__(self, ctx: ExecutionContext):
        self.ctx = ctx
        self.logger = get_logger('service')

    # ----------------- Lookups -----------------

    async def get_task(self, task_type: TaskType, record_id: str) -> EngineResult[TaskKindRecord]:
        """Kind record ``record_id``, which must be of ``task_type``."""
        if task_type in UNIMPLEMENTED_TASK_TYPES:
            return not_implemented(f'{task_type.value} task is not implemented')
        found = await self.ctx.store.find_by_id(TaskKindRecord, record_id)
        if is_err(found):
            return found
        if found.ok_value.task_type is not task_type:
            return not_found(f'Could not find {task_type.value} task with id: {record_id}')
        return found

    async def get_task_model(self, task_id: str) -> EngineResult[TaskModel]:
        return await self.ctx.store.find_by_id(TaskModel, task_id)

    async def search(
        self,
        *,
        status: Optional[TaskStatus | Iterable[TaskStatus]] = None,
        task_type: Optional[TaskType] = None,
        workflow_instance_id: Optional[str] = None,
        reference_task_name: Optional[str] = None,
        limit: int = 100,
    ) -> EngineResult[list[TaskModel]]:
        """TaskModels matching every given filter, oldest scheduled first."""
        if limit < 0:
            return illegal_argument(f'limit must be >= 0, got {limit}')
        filters: dict[str, Any] = {}
        if status is not None:
            filters['status'] = status if isinstance(status, TaskStatus) else list(status)
        if task_type is not None:
            filters['task_type'] = task_type
        if workflow_instance_id is not None:
            filters['workflow_instance_id'] = workflow_instance_id
        if reference_task_name is not None:
            filters['reference_task_name'] = reference_task_name
        return await self.ctx.store.find(
            TaskModel, filters, order_by='scheduled_time', limit=limit
        )

    # ----------------- Polling -----------------

    async def poll(
        self,
        task_type: TaskType,
        worker_id: str,
        domain: Optional[str] = None,
    ) -> EngineResult[TaskModel]:
        """Claim the oldest pollable task of ``task_type``. NOT_FOUND when none is ready."""
        queue_name = queue_name_for(task_type, domain)
        await self._record_poll(task_type, worker_id, domain)
        while True:
            popped = await self.ctx.queue.pop(queue_name)
            if is_err(popped):
                return popped
            claimed = await self._claim(queue_name, popped.ok_value, worker_id, domain)
            if is_err(claimed):
                return claimed
            if claimed.ok_value is not None:
                return Ok(claimed.ok_value)

    async def batch_poll(
        self,
        task_type: TaskType,
        worker_id: str,
        count: Optional[int] = None,
        domain: Optional[str] = None,
    ) -> EngineResult[list[TaskModel]]:
        """Claim up to ``count`` tasks. Never blocks; an empty queue gives ``[]``.

        ``count`` defaults to ``config.queue.default_batch_size``.
        """
        if count is None:
            count = self.ctx.config.queue.default_batch_size
        queue_name = queue_name_for(task_type, domain)
        await self._record_poll(task_type, worker_id, domain)
        popped = await self.ctx.queue.batch_poll(queue_name, count)
        if is_err(popped):
            return popped
        tasks: list[TaskModel] = []
        for task_id in popped.ok_value:
            claimed = await self._claim(queue_name, task_id, worker_id, domain)
            if is_err(claimed):
                return claimed
            if claimed.ok_value is not None:
                tasks.append(claimed.ok_value)
        return Ok(tasks)

    async def _claim(
        self,
        queue_name: str,
        task_id: str,
        worker_id: str,
        domain: Optional[str],
    ) -> EngineResult[Optional[TaskModel]]:
        """Move a popped task to IN_PROGRESS for ``worker_id``.

        Ok(None) means the item was dropped: its task is gone or already
        terminal (redelivery), or another writer won the version race.
        """
        loaded = await self.ctx.store.find_by_id(TaskModel, task_id)
        if is_err(loaded):
            if loaded.err_value.code is EngineErrorCode.NOT_FOUND:
                self.logger.warning(f'Dropping queue item {task_id} from {queue_name}: no such task')
                await self.ctx.queue.ack(queue_name, task_id)
                return Ok(None)
            return loaded

        model = loaded.ok_value
        if model.status.is_terminal:
            self.logger.debug(f'Skipping {model.status.value} task {task_id} popped from {queue_name}')
            await self.ctx.queue.ack(queue_name, task_id)
            return Ok(None)

        now = utc_now()
        model.status = TaskStatus.IN_PROGRESS
        model.worker_id = worker_id
        model.domain = domain
        model.poll_count += 1
        model.start_time = now
        model.update_time = now
        updated = await self.ctx.store.update(model)
        if is_err(updated):
            if updated.err_value.code is EngineErrorCode.CONFLICT:
                # Left in flight; the lease brings it back if nobody acks it.
                self.logger.warning(f'Task {task_id} changed while being claimed; skipping')
                return Ok(None)
            return updated
        return Ok(updated.ok_value)

    async def _record_poll(
        self, task_type: TaskType, worker_id: str, domain: Optional[str]
    ) -> None:
        """Upsert PollData. Failures are logged, never returned."""
        key = PollData.key_for(task_type.value, domain)
        now = utc_now()
        found = await self.ctx.store.find_by_id(PollData, key)
        if is_err(found):
            if found.err_value.code is not EngineErrorCode.NOT_FOUND:
                self.logger.warning(f'Could not read poll data {key}: {found.err_value.message}')
                return
            poll_data = PollData(id=key, queue_name=task_type.value, created_on=now)
            if domain:
                poll_data.domain = domain
        else:
            poll_data = found.ok_value
        poll_data.worker_id = worker_id
        poll_data.last_poll_time = now
        poll_data.modified_on = now
        saved = await self.ctx.store.save(poll_data)
        if is_err(saved):
            self.logger.warning(f'Could not save poll data {key}: {saved.err_value.message}')

    # ----------------- Updates -----------------

    async def update_task(self, update: TaskUpdate) -> EngineResult[TaskModel]:
        """Apply a worker's report; see TaskUpdate."""
        loaded = await self.ctx.store.find_by_id(TaskModel, update.task_id)
        if is_err(loaded):
            return loaded
        model = loaded.ok_value

        if update.version is not None and update.version != model.version:
            return conflict(
                f'Task {model.id} was modified concurrently '
                f'(expected version {update.version}, found {model.version})'
            )
        if not can_transition(model.status, update.status):
            return illegal_argument(
                f'Task {model.id} cannot move from {model.status.value} to {update.status.value}'
            )

        now = utc_now()
        model.status = update.status
        model.update_time = now
        if update.output_data is not None:
            model.output_data = dict(update.output_data)
        if update.reason_for_incompletion is not None:
            model.reason_for_incompletion = update.reason_for_incompletion
        if update.callback_after_seconds is not None:
            model.callback_after_seconds = update.callback_after_seconds
        if update.worker_id is not None:
            model.worker_id = update.worker_id
        if update.status is TaskStatus.IN_PROGRESS and model.start_time is None:
            model.start_time = now
        if update.status.is_terminal:
            model.end_time = now
            model.executed = True

        updated = await self.ctx.store.update(model)
        if is_err(updated):
            return updated

        if update.status.is_terminal:
            acked = await self.ctx.queue.ack(model.queue_name(), model.id)
            if is_err(acked):
                self.logger.warning(
                    f'Could not ack task {model.id} on {model.queue_name()}: '
                    f'{acked.err_value.message}'
                )
        for line in update.logs:
            logged = await self.add_task_log(model.id, line)
            if is_err(logged):
                return logged
        self.logger.debug(f'Task {model.id} -> {update.status.value}')
        return updated

    async def retry_task(self, task_id: str) -> EngineResult[TaskModel]:
        """Move a FAILED, TIMED_OUT or CANCELED task back to SCHEDULED and re-queue it."""
        loaded = await self.ctx.store.find_by_id(TaskModel, task_id)
        if is_err(loaded):
            return loaded
        model = loaded.ok_value
        if not model.status.is_retriable:
            return illegal_argument(f'Task {task_id} in {model.status.value} cannot be retried')

        model.status = TaskStatus.SCHEDULED
        model.retry_count += 1
        model.retried = True
        model.executed = False
        model.start_time = None
        model.end_time = None
        model.worker_id = None
        model.reason_for_incompletion = None
        model.update_time = utc_now()
        updated = await self.ctx.store.update(model)
        if is_err(updated):
            return updated

        if _is_queued_kind(model.task_type):
            pushed = await self.ctx.queue.push(
                model.queue_name(), model.id, priority=model.workflow_priority
            )
            if is_err(pushed):
                return pushed
        self.logger.info(f'Retrying task {task_id} (attempt {model.retry_count})')
        return updated

    async def evaluate_joins(self, workflow_instance_id: str) -> EngineResult[list[TaskModel]]:
        """Run ``check`` on every open JOIN of the workflow instance."""
        joins = await self.ctx.store.find(
            TaskModel,
            {
                'workflow_instance_id': workflow_instance_id,
                'task_type': TaskType.JOIN,
                'status': [TaskStatus.SCHEDULED, TaskStatus.IN_PROGRESS],
            },
            order_by='scheduled_time',
        )
        if is_err(joins):
            return joins
        results: list[TaskModel] = []
        for join_model in joins.ok_value:
            record = await self.ctx.store.find_by_id(TaskKindRecord, join_model.kind_record_id)
            if is_err(record):
                return record
            if not isinstance(record.ok_value, JoinRecord):
                return not_found(f'Could not find JOIN task with id: {join_model.kind_record_id}')
            checked = await record.ok_value.check(self.ctx)
            if is_err(checked):
                return checked
            results.append(checked.ok_value)
        return Ok(results)

    # ----------------- Logs, poll data, queues -----------------

    async def add_task_log(self, task_id: str, message: str) -> EngineResult[TaskExecutionLog]:
        return await self.ctx.store.insert(TaskExecutionLog(task_id=task_id, log=message))

    async def get_task_log(self, task_id: str) -> EngineResult[list[TaskExecutionLog]]:
        return await self.ctx.store.find(
            TaskExecutionLog, {'task_id': task_id}, order_by='created_time'
        )

    async def get_poll_data(self, queue_name: str) -> EngineResult[list[PollData]]:
        return await self.ctx.store.find(
            PollData, {'queue_name': queue_name}, order_by='modified_on'
        )

    async def get_all_poll_data(self) -> EngineResult[list[PollData]]:
        return await self.ctx.store.find(PollData, order_by='modified_on')

    async def queue_sizes(
        self,
        task_types: Optional[Iterable[TaskType]] = None,
        domain: Optional[str] = None,
    ) -> EngineResult[dict[str, int]]:
        """Ready items per queue; every known queue when ``task_types`` is None."""
        if task_types is None:
            return await self.ctx.queue.sizes()
        sizes: dict[str, int] = {}
        for task_type in task_types:
            name = queue_name_for(task_type, domain)
            size = await self.ctx.queue.get_size(name)
            if is_err(size):
                return size
            sizes[name] = size.ok_value
        return Ok(sizes)
