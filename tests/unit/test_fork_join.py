"""Unit tests for FORK_JOIN, FORK_JOIN_DYNAMIC and JOIN."""

from __future__ import annotations

import pytest

from flowcore.core.context import ExecutionContext
from flowcore.core.models.definition import TaskDefinition
from flowcore.core.models.task_config import TaskConfig
from flowcore.core.models.task_model import TaskModel
from flowcore.core.queue.memory import InMemoryQueue
from flowcore.core.result_types import EngineError, EngineErrorCode, EngineResult
from flowcore.core.storage.memory import InMemoryTaskStore
from flowcore.core.tasks import (
    DynamicForkRecord,
    ForkRecord,
    JoinRecord,
    TaskKindRecord,
    resolve,
    to_task,
)
from flowcore.core.types.result import Err, is_err
from flowcore.core.types.status import ForkType, TaskStatus, TaskType

WORKFLOW_ID = 'wf-fork'


@pytest.fixture
def ctx() -> ExecutionContext:
    return ExecutionContext.in_memory()


def _simple(ref: str) -> TaskConfig:
    return TaskConfig(name=ref, task_reference_name=ref)


def _dynamic_fork(**inputs) -> TaskConfig:
    return TaskConfig(
        name='fan_out',
        task_reference_name='fan_out_ref',
        task_type=TaskType.FORK_JOIN_DYNAMIC,
        input_parameters=inputs,
    )


async def _models(ctx: ExecutionContext, **filters) -> list[TaskModel]:
    return (await ctx.store.find(TaskModel, filters, order_by='scheduled_time')).ok_value


async def _finish(ctx: ExecutionContext, task_id: str, status: TaskStatus, output=None) -> None:
    model = (await ctx.store.find_by_id(TaskModel, task_id)).ok_value
    model.status = status
    model.output_data = output or {}
    await ctx.store.update(model)


class _FirstPushFails(InMemoryQueue):
    def __init__(self) -> None:
        super().__init__()
        self.failed = False

    async def push(self, queue_name: str, item_id: str, **kwargs) -> EngineResult[None]:
        if not self.failed:
            self.failed = True
            return Err(EngineError(EngineErrorCode.QUEUE_ERROR, 'queue down', retryable=True))
        return await super().push(queue_name, item_id, **kwargs)


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestFork:
    """Static fan-out."""

    async def test_every_branch_entry_becomes_queued_child(self, ctx: ExecutionContext) -> None:
        config = TaskConfig(
            name='fork',
            task_reference_name='fork_ref',
            task_type=TaskType.FORK_JOIN,
            fork_tasks=[[_simple('a'), _simple('b')], [_simple('c')]],
        )
        record = (await resolve(config, ctx, workflow_instance_id=WORKFLOW_ID)).ok_value
        assert isinstance(record, ForkRecord)
        assert len(record.child_task_ids) == 3

        fork_model = (await ctx.store.find_by_id(TaskModel, record.task_model_id)).ok_value
        assert fork_model.status is TaskStatus.COMPLETED
        assert fork_model.output_data == {'forked_task_ids': record.child_task_ids}

        children = await _models(ctx, task_type=TaskType.SIMPLE)
        assert {c.reference_task_name for c in children} == {'a', 'b', 'c'}
        assert all(c.workflow_instance_id == WORKFLOW_ID for c in children)
        assert (await ctx.queue.get_size('SIMPLE')).ok_value == 3

    async def test_branch_entry_may_name_stored_config(self, ctx: ExecutionContext) -> None:
        stored = _simple('stored')
        await ctx.store.save(stored)
        config = TaskConfig(
            name='fork',
            task_reference_name='fork_ref',
            task_type=TaskType.FORK_JOIN,
            fork_tasks=[[stored.id]],
        )
        record = (await resolve(config, ctx)).ok_value
        child = (await ctx.store.find_by_id(TaskModel, record.child_task_ids[0])).ok_value
        assert child.reference_task_name == 'stored'

    async def test_failed_push_does_not_strand_siblings(self) -> None:
        ctx = ExecutionContext(InMemoryTaskStore(), _FirstPushFails())
        config = TaskConfig(
            name='fork',
            task_reference_name='fork_ref',
            task_type=TaskType.FORK_JOIN,
            fork_tasks=[[_simple('a')], [_simple('b')], [_simple('c')]],
        )
        result = await resolve(config, ctx, workflow_instance_id=WORKFLOW_ID)
        assert result.err_value.code is EngineErrorCode.QUEUE_ERROR

        children = await _models(ctx, task_type=TaskType.SIMPLE)
        assert len(children) == 3
        assert all(c.status is TaskStatus.SCHEDULED for c in children)
        assert (await ctx.queue.get_size('SIMPLE')).ok_value == 2

    async def test_empty_branch_rejected(self, ctx: ExecutionContext) -> None:
        config = TaskConfig(
            name='fork',
            task_reference_name='fork_ref',
            task_type=TaskType.FORK_JOIN,
            fork_tasks=[[_simple('a')], []],
        )
        assert to_task(config).err_value.code is EngineErrorCode.ILLEGAL_ARGUMENT

    async def test_unimplemented_child_rolls_back_everything(self, ctx: ExecutionContext) -> None:
        human = TaskConfig(name='h', task_reference_name='h', task_type=TaskType.HUMAN)
        config = TaskConfig(
            name='fork',
            task_reference_name='fork_ref',
            task_type=TaskType.FORK_JOIN,
            fork_tasks=[[_simple('a')], [human]],
        )
        result = await resolve(config, ctx)
        assert result.err_value.code is EngineErrorCode.NOT_IMPLEMENTED
        assert await _models(ctx) == []
        assert (await ctx.queue.sizes()).ok_value == {}


@pytest.mark.unit
class TestDynamicForkModes:
    """Mode detection happens before any I/O."""

    def test_no_mode_rejected(self) -> None:
        result = to_task(_dynamic_fork())
        assert result.err_value.code is EngineErrorCode.ILLEGAL_ARGUMENT
        assert 'found 0' in result.err_value.message

    def test_two_modes_rejected(self) -> None:
        result = to_task(_dynamic_fork(fork_task_name='simple', fork_task_workflow='wf'))
        assert result.err_value.code is EngineErrorCode.ILLEGAL_ARGUMENT
        assert 'found 2' in result.err_value.message

    def test_different_task_with_same_task_rejected(self) -> None:
        config = _dynamic_fork(fork_task_name='simple')
        config.dynamic_fork_tasks_param = 'tasks'
        assert to_task(config).err_value.code is EngineErrorCode.ILLEGAL_ARGUMENT

    def test_different_task_needs_both_params(self) -> None:
        config = _dynamic_fork(tasks={})
        config.dynamic_fork_tasks_param = 'tasks'
        result = to_task(config)
        assert 'dynamic_fork_tasks_input_param_name' in result.err_value.message

    def test_missing_input_for_task_is_not_found(self) -> None:
        config = _dynamic_fork(
            tasks={'t1': {'name': 'encode'}, 't2': {'name': 'encode'}},
            inputs={'t1': {'file': 'a'}},
        )
        config.dynamic_fork_tasks_param = 'tasks'
        config.dynamic_fork_tasks_input_param_name = 'inputs'
        result = to_task(config)
        assert result.err_value.code is EngineErrorCode.NOT_FOUND
        assert result.err_value.message == 'dynamic_fork_tasks_input is missing for task: t2'

    def test_null_input_parameters_treated_as_empty(self) -> None:
        config = _dynamic_fork(
            tasks={'a': {'name': 'a', 'input_parameters': None}},
            inputs={'a': {'x': 1}},
        )
        config.dynamic_fork_tasks_param = 'tasks'
        config.dynamic_fork_tasks_input_param_name = 'inputs'
        record = to_task(config).ok_value
        assert record.fork_type is ForkType.DIFFERENT_TASK

    def test_non_mapping_input_parameters_rejected(self) -> None:
        config = _dynamic_fork(
            tasks={'a': {'name': 'a', 'input_parameters': ['x']}},
            inputs={'a': {'x': 1}},
        )
        config.dynamic_fork_tasks_param = 'tasks'
        config.dynamic_fork_tasks_input_param_name = 'inputs'
        result = to_task(config)
        assert result.err_value.code is EngineErrorCode.ILLEGAL_ARGUMENT
        assert result.err_value.message == 'dynamic fork task a input_parameters must be a mapping'

    def test_fork_task_inputs_must_be_list_of_mappings(self) -> None:
        result = to_task(_dynamic_fork(fork_task_name='simple', fork_task_inputs=['x']))
        assert result.err_value.code is EngineErrorCode.ILLEGAL_ARGUMENT

    def test_same_task_mode_detected(self) -> None:
        record = to_task(_dynamic_fork(fork_task_name='simple', fork_task_inputs=[{}])).ok_value
        assert isinstance(record, DynamicForkRecord)
        assert record.fork_type is ForkType.SAME_TASK


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestDynamicForkExecution:
    """Children are persisted with the parent and queued after commit."""

    async def test_same_task_replicates_per_input(self, ctx: ExecutionContext) -> None:
        config = _dynamic_fork(
            fork_task_name='simple',
            fork_task_inputs=[{'n': 'A'}, {'n': 'B'}, {'n': 'C'}],
        )
        record = (await resolve(config, ctx)).ok_value
        children = await _models(ctx, task_type=TaskType.SIMPLE)
        assert len(children) == 3
        assert [c.input_data['n'] for c in children] == ['A', 'B', 'C']
        assert children[0].task_def_name == 'dynamic_fork_task_simple'
        assert children[0].reference_task_name == 'dynamic_fork_task_simple_0_ref'
        assert (await ctx.queue.get_size('SIMPLE')).ok_value == 3

        parent = (await ctx.store.find_by_id(TaskModel, record.task_model_id)).ok_value
        assert parent.status is TaskStatus.COMPLETED
        assert parent.task_def_name == 'FORK'
        assert parent.output_data['forked_task_ids'] == [c.id for c in children]

    async def test_same_task_by_definition_name(self, ctx: ExecutionContext) -> None:
        """Replicas of a TaskDefinition carry its name and settings."""
        await ctx.store.save(
            TaskDefinition(
                name='encode',
                retry_count=5,
                response_timeout_seconds=42,
                rate_limit_per_frequency=7,
                rate_limit_frequency_in_seconds=60,
            )
        )
        config = _dynamic_fork(fork_task_name='encode', fork_task_inputs=[{}, {}])
        await resolve(config, ctx)
        children = await _models(ctx, task_type=TaskType.SIMPLE)
        assert len(children) == 2
        assert [c.task_def_name for c in children] == ['encode', 'encode']
        assert [c.response_timeout_seconds for c in children] == [42, 42]
        assert children[0].rate_limit_per_frequency == 7
        assert [c.reference_task_name for c in children] == [
            'dynamic_fork_task_encode_0_ref',
            'dynamic_fork_task_encode_1_ref',
        ]
        child_config = (await ctx.store.find_by_id(TaskConfig, children[0].task_config_id)).ok_value
        assert child_config.retry_count == 5

    async def test_same_task_unknown_name_is_not_found(self, ctx: ExecutionContext) -> None:
        config = _dynamic_fork(fork_task_name='nope', fork_task_inputs=[{}])
        result = await resolve(config, ctx)
        assert result.err_value.code is EngineErrorCode.NOT_FOUND
        assert await _models(ctx) == []

    async def test_sub_workflow_mode(self, ctx: ExecutionContext) -> None:
        config = _dynamic_fork(
            fork_task_workflow='child_wf',
            fork_task_workflow_version=2,
            fork_task_inputs=[{}, {}],
        )
        await resolve(config, ctx)
        children = await _models(ctx, task_type=TaskType.SUB_WORKFLOW)
        assert len(children) == 2
        assert children[0].input_data['subWorkflowName'] == 'child_wf'
        assert children[0].input_data['subWorkflowVersion'] == 2
        assert (await ctx.queue.get_size('SUB_WORKFLOW')).ok_value == 2

    async def test_different_task_merges_inputs(self, ctx: ExecutionContext) -> None:
        config = _dynamic_fork(
            tasks=[
                {'name': 'encode', 'task_reference_name': 'enc'},
                {'name': 'notify', 'task_reference_name': 'hook', 'task_type': 'HTTP'},
            ],
            inputs={
                'enc': {'file': 'a.mp4'},
                'hook': {'http_request': {'uri': 'http://x', 'method': 'post'}},
            },
        )
        config.dynamic_fork_tasks_param = 'tasks'
        config.dynamic_fork_tasks_input_param_name = 'inputs'
        await resolve(config, ctx)
        simple = await _models(ctx, task_type=TaskType.SIMPLE)
        http = await _models(ctx, task_type=TaskType.HTTP)
        assert simple[0].input_data == {'file': 'a.mp4'}
        assert http[0].reference_task_name == 'hook'
        assert (await ctx.queue.get_size('HTTP')).ok_value == 1

    async def test_different_task_accepts_task_configs(self, ctx: ExecutionContext) -> None:
        config = _dynamic_fork(
            tasks=[
                TaskConfig(
                    name='encode',
                    task_reference_name='enc',
                    input_parameters={'codec': 'h264'},
                ),
            ],
            inputs={'enc': {'file': 'a.mp4'}},
        )
        config.dynamic_fork_tasks_param = 'tasks'
        config.dynamic_fork_tasks_input_param_name = 'inputs'
        await resolve(config, ctx)
        children = await _models(ctx, task_type=TaskType.SIMPLE)
        assert len(children) == 1
        assert children[0].reference_task_name == 'enc'
        assert children[0].input_data == {'codec': 'h264', 'file': 'a.mp4'}

    async def test_invalid_child_leaves_nothing(self, ctx: ExecutionContext) -> None:
        """A child failing validation aborts the whole fan-out."""
        config = _dynamic_fork(
            tasks={'ok': {'name': 'encode'}, 'bad': {'name': 'h', 'task_type': 'HTTP'}},
            inputs={'ok': {}, 'bad': {}},
        )
        config.dynamic_fork_tasks_param = 'tasks'
        config.dynamic_fork_tasks_input_param_name = 'inputs'
        result = await resolve(config, ctx)
        assert is_err(result)
        assert await _models(ctx) == []
        assert (await ctx.store.find(TaskKindRecord)).ok_value == []
        assert (await ctx.queue.sizes()).ok_value == {}


@pytest.mark.unit
@pytest.mark.asyncio(loop_scope='function')
class TestJoin:
    """The JOIN gate."""

    async def _fork_and_join(self, ctx: ExecutionContext, join_status=None) -> tuple[list[str], JoinRecord]:
        fork = TaskConfig(
            name='fork',
            task_reference_name='fork_ref',
            task_type=TaskType.FORK_JOIN,
            fork_tasks=[[_simple('a')], [_simple('b')]],
        )
        forked = (await resolve(fork, ctx, workflow_instance_id=WORKFLOW_ID)).ok_value
        join = TaskConfig(
            name='join',
            task_reference_name='join_ref',
            task_type=TaskType.JOIN,
            join_on=['a', 'b'],
            join_status=join_status,
        )
        joined = (await resolve(join, ctx, workflow_instance_id=WORKFLOW_ID)).ok_value
        assert isinstance(joined, JoinRecord)
        return forked.child_task_ids, joined

    async def test_join_requires_join_on(self) -> None:
        config = TaskConfig(name='j', task_reference_name='j', task_type=TaskType.JOIN)
        assert to_task(config).err_value.code is EngineErrorCode.ILLEGAL_ARGUMENT

    async def test_join_created_in_progress_unqueued(self, ctx: ExecutionContext) -> None:
        _, join = await self._fork_and_join(ctx)
        model = (await ctx.store.find_by_id(TaskModel, join.task_model_id)).ok_value
        assert model.status is TaskStatus.IN_PROGRESS
        assert model.input_data['joinOn'] == ['a', 'b']
        assert (await ctx.queue.get_size('JOIN')).ok_value == 0

    async def test_waits_until_all_terminal(self, ctx: ExecutionContext) -> None:
        (a_id, _), join = await self._fork_and_join(ctx)
        await _finish(ctx, a_id, TaskStatus.COMPLETED)
        checked = await join.check(ctx)
        assert checked.ok_value.status is TaskStatus.IN_PROGRESS

    async def test_completes_over_mixed_outcomes_without_join_status(self, ctx: ExecutionContext) -> None:
        (a_id, b_id), join = await self._fork_and_join(ctx)
        await _finish(ctx, a_id, TaskStatus.COMPLETED, {'x': 1})
        await _finish(ctx, b_id, TaskStatus.FAILED, {'y': 2})
        checked = (await join.check(ctx)).ok_value
        assert checked.status is TaskStatus.COMPLETED
        assert checked.output_data == {'a': {'x': 1}, 'b': {'y': 2}}

    async def test_join_status_mismatch_fails(self, ctx: ExecutionContext) -> None:
        (a_id, b_id), join = await self._fork_and_join(ctx, TaskStatus.COMPLETED)
        await _finish(ctx, a_id, TaskStatus.COMPLETED)
        await _finish(ctx, b_id, TaskStatus.TIMED_OUT)
        checked = (await join.check(ctx)).ok_value
        assert checked.status is TaskStatus.FAILED
        assert checked.reason_for_incompletion == 'Joined tasks did not reach COMPLETED: b=TIMED_OUT'

    async def test_check_is_idempotent_once_terminal(self, ctx: ExecutionContext) -> None:
        (a_id, b_id), join = await self._fork_and_join(ctx)
        await _finish(ctx, a_id, TaskStatus.COMPLETED)
        await _finish(ctx, b_id, TaskStatus.COMPLETED)
        first = (await join.check(ctx)).ok_value
        second = (await join.check(ctx)).ok_value
        assert second.version == first.version
