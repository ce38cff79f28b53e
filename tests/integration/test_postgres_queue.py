"""Integration tests: PostgresQueue delivery and the service on top of it."""

from __future__ import annotations

import asyncio

import pytest

from flowcore.core.context import ExecutionContext
from flowcore.core.models.task_config import TaskConfig
from flowcore.core.models.task_model import TaskUpdate
from flowcore.core.reaper import Reaper
from flowcore.core.result_types import EngineErrorCode
from flowcore.core.service import TaskService
from flowcore.core.tasks import schedule
from flowcore.core.types.status import TaskStatus, TaskType

TEST_LEASE_MS = 1_000


@pytest.mark.integration
@pytest.mark.asyncio(loop_scope='session')
class TestPostgresQueue:
    async def test_fifo_and_sizes(self, pg_ctx: ExecutionContext) -> None:
        for item in ('a', 'b', 'c', 'd', 'e'):
            await pg_ctx.queue.push('SIMPLE', item)
        assert (await pg_ctx.queue.pop('SIMPLE')).ok_value == 'a'
        assert (await pg_ctx.queue.batch_poll('SIMPLE', 2)).ok_value == ['b', 'c']
        assert (await pg_ctx.queue.get_size('SIMPLE')).ok_value == 2
        assert (await pg_ctx.queue.sizes()).ok_value == {'SIMPLE': 2}

    async def test_empty_pop_is_not_found(self, pg_ctx: ExecutionContext) -> None:
        result = await pg_ctx.queue.pop('SIMPLE')
        assert result.err_value.code is EngineErrorCode.NOT_FOUND

    async def test_concurrent_pollers_never_share_items(self, pg_ctx: ExecutionContext) -> None:
        for i in range(20):
            await pg_ctx.queue.push('SIMPLE', f'item-{i}')
        batches = await asyncio.gather(
            *(pg_ctx.queue.batch_poll('SIMPLE', 5) for _ in range(4))
        )
        items = [item for batch in batches for item in batch.ok_value]
        assert len(items) == 20
        assert len(set(items)) == 20

    async def test_unacked_item_redelivered(self, pg_ctx: ExecutionContext) -> None:
        await pg_ctx.queue.push('SIMPLE', 'a')
        await pg_ctx.queue.pop('SIMPLE')
        assert (await pg_ctx.queue.contains('SIMPLE', 'a')).ok_value is True
        await asyncio.sleep(TEST_LEASE_MS / 1000 + 0.2)
        assert (await pg_ctx.queue.reclaim_expired()).ok_value == 1
        assert (await pg_ctx.queue.pop('SIMPLE')).ok_value == 'a'

    async def test_ack_removes(self, pg_ctx: ExecutionContext) -> None:
        await pg_ctx.queue.push('SIMPLE', 'a')
        await pg_ctx.queue.pop('SIMPLE')
        assert (await pg_ctx.queue.ack('SIMPLE', 'a')).ok_value is True
        assert (await pg_ctx.queue.contains('SIMPLE', 'a')).ok_value is False

    async def test_priority_then_fifo(self, pg_ctx: ExecutionContext) -> None:
        await pg_ctx.queue.push('SIMPLE', 'low')
        await pg_ctx.queue.push('SIMPLE', 'high', priority=10)
        await pg_ctx.queue.push('SIMPLE', 'low2')
        assert (await pg_ctx.queue.batch_poll('SIMPLE', 3)).ok_value == ['high', 'low', 'low2']

    async def test_push_if_not_exists(self, pg_ctx: ExecutionContext) -> None:
        assert (await pg_ctx.queue.push_if_not_exists('SIMPLE', 'a')).ok_value is True
        assert (await pg_ctx.queue.push_if_not_exists('SIMPLE', 'a')).ok_value is False
        await pg_ctx.queue.push('SIMPLE', 'a')
        assert (await pg_ctx.queue.get_size('SIMPLE')).ok_value == 1

    async def test_delayed_and_postponed_items_wait(self, pg_ctx: ExecutionContext) -> None:
        await pg_ctx.queue.push('SIMPLE', 'later', delay_seconds=60)
        await pg_ctx.queue.push('SIMPLE', 'now')
        await pg_ctx.queue.postpone('SIMPLE', 'now', 60)
        assert (await pg_ctx.queue.get_size('SIMPLE')).ok_value == 0
        assert (await pg_ctx.queue.contains('SIMPLE', 'later')).ok_value is True
        result = await pg_ctx.queue.pop('SIMPLE')
        assert result.err_value.code is EngineErrorCode.NOT_FOUND


@pytest.mark.integration
@pytest.mark.asyncio(loop_scope='session')
class TestPostgresService:
    async def test_schedule_poll_complete(self, pg_ctx: ExecutionContext) -> None:
        service = TaskService(pg_ctx)
        config = TaskConfig(name='encode', task_reference_name='encode')
        record = (await schedule(config, pg_ctx, workflow_instance_id='wf-pg')).ok_value

        polled = (await service.poll(TaskType.SIMPLE, 'worker-1')).ok_value
        assert polled.id == record.task_model_id
        assert polled.status is TaskStatus.IN_PROGRESS

        done = await service.update_task(
            TaskUpdate(
                task_id=polled.id,
                status=TaskStatus.COMPLETED,
                output_data={'ok': True},
                logs=['done'],
                version=polled.version,
            )
        )
        assert done.ok_value.status is TaskStatus.COMPLETED
        assert (await pg_ctx.queue.contains('SIMPLE', polled.id)).ok_value is False
        assert [line.log for line in (await service.get_task_log(polled.id)).ok_value] == ['done']
        assert len((await service.get_poll_data('SIMPLE')).ok_value) == 1

    async def test_reaper_requeues_after_lost_lease(self, pg_ctx: ExecutionContext) -> None:
        config = TaskConfig(name='encode', task_reference_name='encode')
        record = (await schedule(config, pg_ctx)).ok_value
        await pg_ctx.queue.pop('SIMPLE')
        await asyncio.sleep(TEST_LEASE_MS / 1000 + 0.2)

        report = await Reaper().run_once(pg_ctx)
        assert report.errors == {}
        assert report.reclaimed == 1
        assert (await pg_ctx.queue.pop('SIMPLE')).ok_value == record.task_model_id
