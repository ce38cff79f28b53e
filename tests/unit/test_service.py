"""Unit tests for TaskService polling, updates, retries and read side."""

from __future__ import annotations

import pytest

from flowcore.core.context import ExecutionContext
from flowcore.core.models.config import EngineConfig, QueueConfig
from flowcore.core.models.logs import PollData
from flowcore.core.models.task_config import TaskConfig
from flowcore.core.models.task_model import TaskModel, TaskUpdate
from flowcore.core.result_types import EngineErrorCode
from flowcore.core.service import TaskService
from flowcore.core.tasks import SimpleRecord, schedule
from flowcore.core.types.result import is_err, is_ok
from flowcore.core.types.status import TaskStatus, TaskType

WORKFLOW_ID = 'wf-svc'


@pytest.fixture
def ctx() -> ExecutionContext:
    return ExecutionContext.in_memory()


@pytest.fixture
def service(ctx: ExecutionContext) -> TaskService:
    return TaskService(ctx)


async def _schedule(ctx: ExecutionContext, ref: str = 'work', **kwargs) -> str:
    config = TaskConfig(name=ref, task_reference_name=ref, **kwargs)
    record = (await schedule(config, ctx, workflow_instance_id=WORKFLOW_ID)).ok_value
    return record.task_model_id


async def _set_status(ctx: ExecutionContext, task_id: str, status: TaskStatus) -> None:
    model = (await ctx.store.find_by_id(TaskModel, task_id)).ok_value
    model.status = status
    await ctx.store.update(model)


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestLookups:
    async def test_get_task_checks_type(self, ctx: ExecutionContext, service: TaskService) -> None:
        config = TaskConfig(name='work', task_reference_name='work')
        record = (await schedule(config, ctx)).ok_value
        found = await service.get_task(TaskType.SIMPLE, record.id)
        assert isinstance(found.ok_value, SimpleRecord)
        wrong = await service.get_task(TaskType.HTTP, record.id)
        assert wrong.err_value.code is EngineErrorCode.NOT_FOUND

    async def test_get_task_unimplemented_kind(self, service: TaskService) -> None:
        result = await service.get_task(TaskType.KAFKA_PUBLISH, 'any')
        assert result.err_value.code is EngineErrorCode.NOT_IMPLEMENTED

    async def test_search_filters(self, ctx: ExecutionContext, service: TaskService) -> None:
        first = await _schedule(ctx, 'a')
        await _schedule(ctx, 'b')
        await _set_status(ctx, first, TaskStatus.COMPLETED)
        found = await service.search(status=TaskStatus.SCHEDULED, workflow_instance_id=WORKFLOW_ID)
        assert [m.reference_task_name for m in found.ok_value] == ['b']
        assert is_err(await service.search(limit=-1))


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestPoll:
    async def test_poll_claims_task(self, ctx: ExecutionContext, service: TaskService) -> None:
        task_id = await _schedule(ctx)
        polled = (await service.poll(TaskType.SIMPLE, 'worker-1')).ok_value
        assert polled.id == task_id
        assert polled.status is TaskStatus.IN_PROGRESS
        assert polled.worker_id == 'worker-1'
        assert polled.poll_count == 1
        assert polled.start_time is not None

    async def test_poll_empty_is_not_found(self, service: TaskService) -> None:
        result = await service.poll(TaskType.SIMPLE, 'worker-1')
        assert result.err_value.code is EngineErrorCode.NOT_FOUND

    async def test_poll_skips_terminal_redelivery(self, ctx: ExecutionContext, service: TaskService) -> None:
        """A task completed elsewhere is acked and dropped, the next one is claimed."""
        done = await _schedule(ctx, 'done')
        todo = await _schedule(ctx, 'todo')
        await _set_status(ctx, done, TaskStatus.CANCELED)
        polled = (await service.poll(TaskType.SIMPLE, 'worker-1')).ok_value
        assert polled.id == todo
        assert (await ctx.queue.contains('SIMPLE', done)).ok_value is False

    async def test_poll_drops_items_without_task(self, ctx: ExecutionContext, service: TaskService) -> None:
        await ctx.queue.push('SIMPLE', 'ghost')
        result = await service.poll(TaskType.SIMPLE, 'worker-1')
        assert result.err_value.code is EngineErrorCode.NOT_FOUND
        assert (await ctx.queue.contains('SIMPLE', 'ghost')).ok_value is False

    async def test_poll_by_domain(self, ctx: ExecutionContext, service: TaskService) -> None:
        task_id = await _schedule(ctx, domain='eu')
        assert is_err(await service.poll(TaskType.SIMPLE, 'w'))
        polled = (await service.poll(TaskType.SIMPLE, 'w', domain='eu')).ok_value
        assert polled.id == task_id
        assert polled.domain == 'eu'

    async def test_batch_poll(self, ctx: ExecutionContext, service: TaskService) -> None:
        for ref in ('a', 'b', 'c'):
            await _schedule(ctx, ref)
        polled = (await service.batch_poll(TaskType.SIMPLE, 'worker-1', 5)).ok_value
        assert [m.reference_task_name for m in polled] == ['a', 'b', 'c']
        assert (await service.batch_poll(TaskType.SIMPLE, 'worker-1', 5)).ok_value == []

    async def test_batch_poll_defaults_to_configured_size(self) -> None:
        ctx = ExecutionContext.in_memory(EngineConfig(queue=QueueConfig(default_batch_size=2)))
        for ref in ('a', 'b', 'c'):
            await _schedule(ctx, ref)
        polled = (await TaskService(ctx).batch_poll(TaskType.SIMPLE, 'worker-1')).ok_value
        assert [m.reference_task_name for m in polled] == ['a', 'b']
        assert (await ctx.queue.get_size('SIMPLE')).ok_value == 1

    async def test_poll_records_poll_data(self, service: TaskService) -> None:
        await service.poll(TaskType.SIMPLE, 'worker-1')
        await service.poll(TaskType.SIMPLE, 'worker-2', domain='eu')
        rows = (await service.get_poll_data('SIMPLE')).ok_value
        assert {(r.domain, r.worker_id) for r in rows} == {('DEFAULT', 'worker-1'), ('eu', 'worker-2')}

        await service.poll(TaskType.SIMPLE, 'worker-3')
        default = (await service.ctx.store.find_by_id(PollData, 'DEFAULT:SIMPLE')).ok_value
        assert default.worker_id == 'worker-3'
        assert len((await service.get_all_poll_data()).ok_value) == 2


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestUpdate:
    async def test_complete_acks_and_logs(self, ctx: ExecutionContext, service: TaskService) -> None:
        task_id = await _schedule(ctx)
        await service.poll(TaskType.SIMPLE, 'worker-1')
        update = TaskUpdate(
            task_id=task_id,
            status=TaskStatus.COMPLETED,
            output_data={'result': 42},
            logs=['started', 'finished'],
        )
        updated = (await service.update_task(update)).ok_value
        assert updated.status is TaskStatus.COMPLETED
        assert updated.output_data == {'result': 42}
        assert updated.executed is True
        assert updated.end_time is not None
        assert (await ctx.queue.contains('SIMPLE', task_id)).ok_value is False
        logs = (await service.get_task_log(task_id)).ok_value
        assert [line.log for line in logs] == ['started', 'finished']

    async def test_terminal_task_cannot_move(self, ctx: ExecutionContext, service: TaskService) -> None:
        task_id = await _schedule(ctx)
        await service.update_task(TaskUpdate(task_id=task_id, status=TaskStatus.COMPLETED))
        result = await service.update_task(TaskUpdate(task_id=task_id, status=TaskStatus.IN_PROGRESS))
        assert result.err_value.code is EngineErrorCode.ILLEGAL_ARGUMENT

    async def test_stale_version_conflicts(self, ctx: ExecutionContext, service: TaskService) -> None:
        task_id = await _schedule(ctx)
        polled = (await service.poll(TaskType.SIMPLE, 'worker-1')).ok_value
        await service.update_task(
            TaskUpdate(task_id=task_id, status=TaskStatus.IN_PROGRESS, version=polled.version)
        )
        result = await service.update_task(
            TaskUpdate(task_id=task_id, status=TaskStatus.COMPLETED, version=polled.version)
        )
        assert result.err_value.code is EngineErrorCode.CONFLICT

    async def test_in_progress_callback(self, ctx: ExecutionContext, service: TaskService) -> None:
        task_id = await _schedule(ctx)
        updated = await service.update_task(
            TaskUpdate(task_id=task_id, status=TaskStatus.IN_PROGRESS, callback_after_seconds=30)
        )
        assert updated.ok_value.callback_after_seconds == 30
        assert updated.ok_value.start_time is not None

    async def test_unknown_task_is_not_found(self, service: TaskService) -> None:
        result = await service.update_task(TaskUpdate(task_id='nope', status=TaskStatus.COMPLETED))
        assert result.err_value.code is EngineErrorCode.NOT_FOUND


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestRetry:
    async def test_failed_task_requeued(self, ctx: ExecutionContext, service: TaskService) -> None:
        task_id = await _schedule(ctx)
        await service.poll(TaskType.SIMPLE, 'worker-1')
        await service.update_task(
            TaskUpdate(task_id=task_id, status=TaskStatus.FAILED, reason_for_incompletion='boom')
        )
        retried = (await service.retry_task(task_id)).ok_value
        assert retried.status is TaskStatus.SCHEDULED
        assert retried.retry_count == 1
        assert retried.retried is True
        assert retried.reason_for_incompletion is None
        assert retried.worker_id is None
        assert (await service.poll(TaskType.SIMPLE, 'worker-2')).ok_value.id == task_id

    async def test_terminal_error_not_retriable(self, ctx: ExecutionContext, service: TaskService) -> None:
        task_id = await _schedule(ctx)
        await service.update_task(
            TaskUpdate(task_id=task_id, status=TaskStatus.FAILED_WITH_TERMINAL_ERROR)
        )
        result = await service.retry_task(task_id)
        assert result.err_value.code is EngineErrorCode.ILLEGAL_ARGUMENT

    async def test_completed_not_retriable(self, ctx: ExecutionContext, service: TaskService) -> None:
        task_id = await _schedule(ctx)
        await _set_status(ctx, task_id, TaskStatus.COMPLETED)
        assert is_err(await service.retry_task(task_id))

    async def test_skipped_not_retriable(self, ctx: ExecutionContext, service: TaskService) -> None:
        task_id = await _schedule(ctx)
        await _set_status(ctx, task_id, TaskStatus.SKIPPED)
        result = await service.retry_task(task_id)
        assert result.err_value.code is EngineErrorCode.ILLEGAL_ARGUMENT
        model = (await ctx.store.find_by_id(TaskModel, task_id)).ok_value
        assert model.status is TaskStatus.SKIPPED
        assert model.retry_count == 0


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestJoinsAndQueues:
    async def test_evaluate_joins(self, ctx: ExecutionContext, service: TaskService) -> None:
        a = await _schedule(ctx, 'a')
        join = TaskConfig(
            name='join', task_reference_name='join_ref', task_type=TaskType.JOIN, join_on=['a'],
        )
        await schedule(join, ctx, workflow_instance_id=WORKFLOW_ID)

        pending = (await service.evaluate_joins(WORKFLOW_ID)).ok_value
        assert [m.status for m in pending] == [TaskStatus.IN_PROGRESS]

        await service.update_task(TaskUpdate(task_id=a, status=TaskStatus.COMPLETED))
        done = (await service.evaluate_joins(WORKFLOW_ID)).ok_value
        assert [m.status for m in done] == [TaskStatus.COMPLETED]
        assert (await service.evaluate_joins(WORKFLOW_ID)).ok_value == []

    async def test_queue_sizes(self, ctx: ExecutionContext, service: TaskService) -> None:
        await _schedule(ctx, 'a')
        await _schedule(ctx, 'b', domain='eu')
        sizes = (await service.queue_sizes([TaskType.SIMPLE, TaskType.HTTP])).ok_value
        assert sizes == {'SIMPLE': 1, 'HTTP': 0}
        assert (await service.queue_sizes([TaskType.SIMPLE], 'eu')).ok_value == {'eu:SIMPLE': 1}
        assert is_ok(await service.queue_sizes())

    async def test_task_log_ordering(self, service: TaskService) -> None:
        for line in ('one', 'two', 'three'):
            await service.add_task_log('t-1', line)
        await service.add_task_log('t-2', 'other')
        logs = (await service.get_task_log('t-1')).ok_value
        assert [line.log for line in logs] == ['one', 'two', 'three']
