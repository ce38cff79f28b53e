# flowcore/core/tasks/flow.py
"""Control-flow kinds: SWITCH, DO_WHILE, WAIT, TERMINATE_TASK, UPDATE_TASK, SET_VARIABLE."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, ClassVar, Optional, Self

from pydantic import Field

from flowcore.core.logging import get_logger
from flowcore.core.models.base import utc_now
from flowcore.core.models.task_config import TaskConfig
from flowcore.core.models.task_model import TaskModel
from flowcore.core.result_types import EngineResult, illegal_argument, not_found
from flowcore.core.tasks.base import TaskKindRecord
from flowcore.core.types.result import Ok, is_err
from flowcore.core.types.status import (
    TaskStatus,
    TaskTerminationStatus,
    TaskType,
    can_transition,
)

if TYPE_CHECKING:
    from flowcore.core.context import ExecutionContext

logger = get_logger('flow')

VALUE_PARAM_EVALUATOR = 'value-param'

_DURATION_PART = re.compile(r'(\d+)\s*([dhms])', re.IGNORECASE)
_DURATION_UNITS = {'d': 86400, 'h': 3600, 'm': 60, 's': 1}


class SwitchRecord(TaskKindRecord):
    """
    SWITCH: picks one branch of ``decision_cases`` and schedules it.

    Only the ``value-param`` evaluator is supported: the case key is the
    input parameter named by ``expression``. An unmatched value runs
    ``default_case`` (possibly nothing).
    """

    task_type: ClassVar[TaskType] = TaskType.SWITCH
    initial_status: ClassVar[TaskStatus] = TaskStatus.COMPLETED
    queued: ClassVar[bool] = False

    selected_case: Optional[str] = None
    child_task_ids: list[str] = Field(default_factory=list)

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        required = cls.require(config, fields=('evaluator_type', 'expression', 'decision_cases'))
        if is_err(required):
            return required
        if config.evaluator_type != VALUE_PARAM_EVALUATOR:
            return illegal_argument(
                f'SWITCH task {config.task_reference_name!r}: evaluator '
                f'{config.evaluator_type!r} is not supported, use {VALUE_PARAM_EVALUATOR!r}'
            )
        value = config.get_input_parameter_optional(config.expression or '')
        if value is None and config.case_value_param:
            value = config.get_input_parameter_optional(config.case_value_param)
        return Ok(cls(selected_case=None if value is None else str(value)))

    def _case_configs(self) -> list[TaskConfig]:
        cases = self.config.decision_cases or {}
        if self.selected_case is not None and self.selected_case in cases:
            return list(cases[self.selected_case])
        return list(self.config.default_case or [])

    async def execute(self, ctx: ExecutionContext) -> EngineResult[TaskModel]:
        spawned = await self.spawn(ctx, self._case_configs())
        if is_err(spawned):
            return spawned
        self.child_task_ids = spawned.ok_value
        return await super().execute(ctx)

    def prepare_task(self, model: TaskModel) -> EngineResult[None]:
        model.output_data = {
            'evaluationResult': [self.selected_case] if self.selected_case is not None else [],
        }
        return Ok(None)


class DoWhileRecord(TaskKindRecord):
    """
    DO_WHILE: runs ``loop_over`` once per iteration.

    ``loop_condition`` is evaluated outside the engine; whoever evaluates it
    calls ``next_iteration`` to run the body again or ``complete`` to close
    the loop. Body reference names get an ``__<iteration>`` suffix.
    """

    task_type: ClassVar[TaskType] = TaskType.DO_WHILE
    initial_status: ClassVar[TaskStatus] = TaskStatus.IN_PROGRESS
    queued: ClassVar[bool] = False

    iteration: int = 1
    child_task_ids: list[str] = Field(default_factory=list)

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        required = cls.require(config, fields=('evaluator_type', 'loop_condition', 'loop_over'))
        if is_err(required):
            return required
        return Ok(cls())

    def _body(self, iteration: int) -> list[TaskConfig]:
        return [
            c.child(task_reference_name=f'{c.task_reference_name}__{iteration}')
            for c in self.config.loop_over or []
        ]

    async def execute(self, ctx: ExecutionContext) -> EngineResult[TaskModel]:
        spawned = await self.spawn(ctx, self._body(self.iteration), iteration=self.iteration)
        if is_err(spawned):
            return spawned
        self.child_task_ids = list(spawned.ok_value)
        return await super().execute(ctx)

    def prepare_task(self, model: TaskModel) -> EngineResult[None]:
        model.iteration = self.iteration
        return Ok(None)

    async def next_iteration(self, ctx: ExecutionContext) -> EngineResult[TaskModel]:
        """Schedule the loop body again with the iteration counter bumped."""
        from flowcore.core.tasks.resolver import dispatch_spawned

        bound = await self.bind(ctx)
        if is_err(bound):
            return bound
        if bound.ok_value.status.is_terminal:
            return illegal_argument(
                f'DO_WHILE task {self.task_model_id} is {bound.ok_value.status.value}; '
                'cannot start another iteration'
            )
        self._spawned = []

        async def _advance() -> EngineResult[TaskModel]:
            model = await ctx.store.find_by_id(TaskModel, self.task_model_id)
            if is_err(model):
                return model
            iteration = model.ok_value.iteration + 1
            spawned = await self.spawn(ctx, self._body(iteration), iteration=iteration)
            if is_err(spawned):
                return spawned
            self.iteration = iteration
            self.child_task_ids = self.child_task_ids + spawned.ok_value
            saved = await ctx.store.save(self)
            if is_err(saved):
                return saved
            updated = model.ok_value.model_copy(
                update={'iteration': iteration, 'update_time': utc_now()}
            )
            return await ctx.store.update(updated)

        advanced = await ctx.store.atomic(_advance)
        if is_err(advanced):
            return advanced
        logger.info(
            f'DO_WHILE {self.config.task_reference_name} started iteration {self.iteration}'
        )
        dispatched = await dispatch_spawned(self, ctx)
        if is_err(dispatched):
            return dispatched
        return advanced

    async def complete(
        self,
        ctx: ExecutionContext,
        status: TaskStatus = TaskStatus.COMPLETED,
    ) -> EngineResult[TaskModel]:
        """Close the loop with a terminal ``status``. No-op when already terminal."""
        if not status.is_terminal:
            return illegal_argument(f'DO_WHILE cannot complete with {status.value}')
        bound = await self.bind(ctx)
        if is_err(bound):
            return bound
        model = bound.ok_value
        if model.status.is_terminal:
            return Ok(model)
        now = utc_now()
        model.status = status
        model.end_time = now
        model.update_time = now
        model.executed = True
        model.output_data = {**model.output_data, 'iteration': model.iteration}
        return await ctx.store.update(model)


def parse_duration(value: Any) -> Optional[int]:
    """Seconds in ``value``: an int, ``"90"``, ``"30s"``, ``"1h 30m"``, ``"2d"``.

    None when the text is not a duration.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.isdigit():
        return int(text)
    parts = _DURATION_PART.findall(text)
    if not parts or _DURATION_PART.sub('', text).strip():
        return None
    return sum(int(amount) * _DURATION_UNITS[unit.lower()] for amount, unit in parts)


def _parse_until(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        until = value
    elif isinstance(value, str):
        try:
            until = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if until.tzinfo is None:
        until = until.replace(tzinfo=timezone.utc)
    return until


class WaitRecord(TaskKindRecord):
    """WAIT: an IN_PROGRESS gate the reaper completes once ``wait_timeout`` passes."""

    task_type: ClassVar[TaskType] = TaskType.WAIT
    initial_status: ClassVar[TaskStatus] = TaskStatus.IN_PROGRESS
    queued: ClassVar[bool] = False

    until: Optional[datetime] = None
    duration_seconds: Optional[int] = None

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        raw_until = config.get_input_parameter_optional('until')
        raw_duration = config.get_input_parameter_optional('duration')
        if (raw_until is None) == (raw_duration is None):
            return illegal_argument(
                f'WAIT task {config.task_reference_name!r} needs exactly one of '
                'input until or input duration'
            )
        if raw_until is not None:
            until = _parse_until(raw_until)
            if until is None:
                return illegal_argument(f'WAIT input until is not an ISO datetime: {raw_until!r}')
            return Ok(cls(until=until))
        seconds = parse_duration(raw_duration)
        if seconds is None:
            return illegal_argument(
                f'WAIT input duration is not a duration like "30s" or "1h 5m": {raw_duration!r}'
            )
        return Ok(cls(duration_seconds=seconds))

    def prepare_task(self, model: TaskModel) -> EngineResult[None]:
        start = model.scheduled_time
        deadline = self.until or start + timedelta(seconds=self.duration_seconds or 0)
        model.wait_timeout = int(deadline.timestamp())
        model.callback_after_seconds = max(0, int((deadline - start).total_seconds()))
        return Ok(None)


class TerminateTaskRecord(TaskKindRecord):
    task_type: ClassVar[TaskType] = TaskType.TERMINATE_TASK
    initial_status: ClassVar[TaskStatus] = TaskStatus.COMPLETED
    queued: ClassVar[bool] = False

    termination_status: TaskTerminationStatus

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        raw = config.get_input_parameter_required('termination_status')
        if is_err(raw):
            return raw
        try:
            status = TaskTerminationStatus(str(raw.ok_value).upper())
        except ValueError:
            allowed = ', '.join(s.value for s in TaskTerminationStatus)
            return illegal_argument(
                f'TERMINATE_TASK termination_status must be one of {allowed}, '
                f'got {raw.ok_value!r}'
            )
        return Ok(cls(termination_status=status))

    def prepare_task(self, model: TaskModel) -> EngineResult[None]:
        model.output_data = {
            'termination_status': self.termination_status.value,
            'workflow_output': model.input_data.get('workflow_output', {}),
        }
        return Ok(None)


class UpdateTaskRecord(TaskKindRecord):
    """
    UPDATE_TASK: sets the status (and optionally output) of another task.

    The target is ``task_id``, or the latest task with ``task_ref_name`` in
    workflow ``workflow_id``. The target's queue item is left alone; pollers
    ack terminal tasks when they pop them.
    """

    task_type: ClassVar[TaskType] = TaskType.UPDATE_TASK
    initial_status: ClassVar[TaskStatus] = TaskStatus.COMPLETED
    queued: ClassVar[bool] = False

    target_status: TaskStatus
    target_task_id: Optional[str] = None

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        raw = config.get_input_parameter_required('task_status')
        if is_err(raw):
            return raw
        try:
            status = TaskStatus(str(raw.ok_value).upper())
        except ValueError:
            return illegal_argument(f'UPDATE_TASK task_status is not a task status: {raw.ok_value!r}')

        task_id = config.get_input_parameter_optional('task_id')
        if task_id is None:
            required = cls.require(config, inputs=('workflow_id', 'task_ref_name'))
            if is_err(required):
                return illegal_argument(
                    f'UPDATE_TASK task {config.task_reference_name!r} needs input task_id, '
                    'or both workflow_id and task_ref_name'
                )
        return Ok(cls(target_status=status, target_task_id=task_id))

    async def _target(self, ctx: ExecutionContext) -> EngineResult[TaskModel]:
        if self.target_task_id is not None:
            return await ctx.store.find_by_id(TaskModel, self.target_task_id)
        inputs = self.config.input_parameters
        found = await ctx.store.find(
            TaskModel,
            {
                'workflow_instance_id': inputs['workflow_id'],
                'reference_task_name': inputs['task_ref_name'],
            },
            order_by='scheduled_time',
            descending=True,
            limit=1,
        )
        if is_err(found):
            return found
        if not found.ok_value:
            return not_found(
                f'No task {inputs["task_ref_name"]!r} in workflow {inputs["workflow_id"]}'
            )
        return Ok(found.ok_value[0])

    async def execute(self, ctx: ExecutionContext) -> EngineResult[TaskModel]:
        target_r = await self._target(ctx)
        if is_err(target_r):
            return target_r
        target = target_r.ok_value
        if not can_transition(target.status, self.target_status):
            return illegal_argument(
                f'Task {target.id} cannot move from {target.status.value} '
                f'to {self.target_status.value}'
            )

        inputs = self.config.input_parameters
        output = inputs.get('task_output')
        if isinstance(output, dict):
            if inputs.get('merge_output'):
                target.output_data = {**target.output_data, **output}
            else:
                target.output_data = dict(output)
        now = utc_now()
        target.status = self.target_status
        target.update_time = now
        if self.target_status is TaskStatus.IN_PROGRESS and target.start_time is None:
            target.start_time = now
        if self.target_status.is_terminal:
            target.end_time = now
        updated = await ctx.store.update(target)
        if is_err(updated):
            return updated
        self.target_task_id = target.id
        return await super().execute(ctx)

    def prepare_task(self, model: TaskModel) -> EngineResult[None]:
        model.output_data = {
            'task_id': self.target_task_id,
            'task_status': self.target_status.value,
        }
        return Ok(None)


class SetVariableRecord(TaskKindRecord):
    """SET_VARIABLE: completes at once; its input parameters are its output."""

    task_type: ClassVar[TaskType] = TaskType.SET_VARIABLE
    initial_status: ClassVar[TaskStatus] = TaskStatus.COMPLETED
    queued: ClassVar[bool] = False

    def prepare_task(self, model: TaskModel) -> EngineResult[None]:
        model.output_data = dict(model.input_data)
        return Ok(None)
