# flowcore/core/tasks/fork.py
"""Static and dynamic fan-out.

Both kinds complete synchronously: their work is creating the children.
Children are built and validated first, then persisted in the resolver's
unit of work together with the parent, and queued after commit.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar, Mapping, Optional, Self

from pydantic import Field, PrivateAttr, ValidationError

from flowcore.core.defaults import (
    DYNAMIC_FORK_SUBWORKFLOW_PREFIX,
    DYNAMIC_FORK_TASK_PREFIX,
)
from flowcore.core.errors import TaskConfigError
from flowcore.core.logging import get_logger
from flowcore.core.models.definition import TaskDefinition
from flowcore.core.models.task_config import SubWorkflowParams, TaskConfig
from flowcore.core.models.task_model import TaskModel
from flowcore.core.result_types import (
    EngineErrorCode,
    EngineResult,
    illegal_argument,
    not_found,
)
from flowcore.core.tasks.base import TaskKindRecord
from flowcore.core.types.result import Ok, is_err
from flowcore.core.types.status import ForkType, TaskStatus, TaskType

if TYPE_CHECKING:
    from flowcore.core.context import ExecutionContext

logger = get_logger('fork')


class ForkRecord(TaskKindRecord):
    """FORK_JOIN: every entry of every ``fork_tasks`` branch becomes a child."""

    task_type: ClassVar[TaskType] = TaskType.FORK_JOIN
    initial_status: ClassVar[TaskStatus] = TaskStatus.COMPLETED
    queued: ClassVar[bool] = False

    child_task_ids: list[str] = Field(default_factory=list)

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        required = cls.require(config, fields=('fork_tasks',))
        if is_err(required):
            return required
        empty = [str(i) for i, branch in enumerate(config.fork_tasks or []) if not branch]
        if empty:
            return illegal_argument(
                f'FORK_JOIN task {config.task_reference_name!r} has empty fork_tasks '
                f'branches: {", ".join(empty)}'
            )
        return Ok(cls())

    async def _child_configs(self, ctx: ExecutionContext) -> EngineResult[list[TaskConfig]]:
        children: list[TaskConfig] = []
        for branch in self.config.fork_tasks or []:
            for entry in branch:
                if isinstance(entry, TaskConfig):
                    children.append(entry)
                    continue
                found = await ctx.store.find_by_id(TaskConfig, entry)
                if is_err(found):
                    return found
                children.append(found.ok_value)
        return Ok(children)

    async def execute(self, ctx: ExecutionContext) -> EngineResult[TaskModel]:
        children = await self._child_configs(ctx)
        if is_err(children):
            return children
        spawned = await self.spawn(ctx, children.ok_value)
        if is_err(spawned):
            return spawned
        self.child_task_ids = spawned.ok_value
        logger.info(
            f'FORK_JOIN {self.config.task_reference_name} spawned '
            f'{len(self.child_task_ids)} task(s)'
        )
        return await super().execute(ctx)

    def prepare_task(self, model: TaskModel) -> EngineResult[None]:
        model.output_data = {'forked_task_ids': list(self.child_task_ids)}
        return Ok(None)


class DynamicForkRecord(TaskKindRecord):
    """
    FORK_JOIN_DYNAMIC: fan-out whose children are decided at runtime.

    The mode comes from which field group the config carries; the groups are
    mutually exclusive:
    - DIFFERENT_TASK: ``dynamic_fork_tasks_param`` + ``dynamic_fork_tasks_input_param_name``
      name two inputs, a task map (ref -> config payload, or a list of payloads)
      and an input map (ref -> input parameters)
    - SAME_TASK: input ``fork_task_name`` (a TaskType or TaskDefinition name)
      replicated once per element of input ``fork_task_inputs``
    - SAME_TASK_SUB_WORKFLOW: input ``fork_task_workflow`` (plus optional
      ``fork_task_workflow_version``) started as one SUB_WORKFLOW per element
      of ``fork_task_inputs``
    """

    task_type: ClassVar[TaskType] = TaskType.FORK_JOIN_DYNAMIC
    initial_status: ClassVar[TaskStatus] = TaskStatus.COMPLETED
    queued: ClassVar[bool] = False

    fork_type: ForkType
    child_task_ids: list[str] = Field(default_factory=list)
    fork_task_name: Optional[str] = None
    fork_task_workflow: Optional[str] = None
    fork_task_workflow_version: Optional[int] = None

    # DIFFERENT_TASK children are fully known at build time.
    _prebuilt: list[TaskConfig] = PrivateAttr(default_factory=list)
    _fork_inputs: list[dict[str, Any]] = PrivateAttr(default_factory=list)

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        inputs = config.input_parameters
        groups = {
            ForkType.DIFFERENT_TASK: (
                config.dynamic_fork_tasks_param is not None
                or config.dynamic_fork_tasks_input_param_name is not None
            ),
            ForkType.SAME_TASK: inputs.get('fork_task_name') is not None,
            ForkType.SAME_TASK_SUB_WORKFLOW: inputs.get('fork_task_workflow') is not None,
        }
        present = [fork_type for fork_type, on in groups.items() if on]
        if len(present) != 1:
            return illegal_argument(
                f'FORK_JOIN_DYNAMIC task {config.task_reference_name!r} needs exactly one of '
                'dynamic_fork_tasks_param/dynamic_fork_tasks_input_param_name, '
                'input fork_task_name, or input fork_task_workflow; '
                f'found {len(present)}'
                + (f' ({", ".join(t.value for t in present)})' if present else '')
            )

        match present[0]:
            case ForkType.DIFFERENT_TASK:
                return cls._build_different_task(config)
            case ForkType.SAME_TASK:
                return cls._build_replicated(config, ForkType.SAME_TASK)
            case ForkType.SAME_TASK_SUB_WORKFLOW:
                return cls._build_replicated(config, ForkType.SAME_TASK_SUB_WORKFLOW)

    @classmethod
    def _build_different_task(cls, config: TaskConfig) -> EngineResult[Self]:
        required = cls.require(
            config,
            fields=('dynamic_fork_tasks_param', 'dynamic_fork_tasks_input_param_name'),
        )
        if is_err(required):
            return required
        tasks_r = config.get_input_parameter_required(config.dynamic_fork_tasks_param or '')
        if is_err(tasks_r):
            return tasks_r
        inputs_r = config.get_input_parameter_required(
            config.dynamic_fork_tasks_input_param_name or ''
        )
        if is_err(inputs_r):
            return inputs_r
        if not isinstance(inputs_r.ok_value, Mapping):
            return illegal_argument(
                f'input {config.dynamic_fork_tasks_input_param_name} must map '
                'task reference names to input parameters'
            )

        payloads = _task_payloads(tasks_r.ok_value)
        if is_err(payloads):
            return payloads

        task_inputs: Mapping[str, Any] = inputs_r.ok_value
        children: list[TaskConfig] = []
        for ref, payload in payloads.ok_value:
            if ref not in task_inputs:
                return not_found(f'dynamic_fork_tasks_input is missing for task: {ref}')
            task_input = task_inputs[ref]
            if not isinstance(task_input, Mapping):
                return illegal_argument(f'dynamic fork input for task {ref} must be a mapping')
            base_input = payload.get('input_parameters') or {}
            if not isinstance(base_input, Mapping):
                return illegal_argument(
                    f'dynamic fork task {ref} input_parameters must be a mapping'
                )
            child = _validate_child(
                {
                    **payload,
                    'task_reference_name': ref,
                    'input_parameters': {**base_input, **task_input},
                }
            )
            if is_err(child):
                return child
            children.append(child.ok_value)

        record = cls(fork_type=ForkType.DIFFERENT_TASK)
        record._prebuilt = children
        return Ok(record)

    @classmethod
    def _build_replicated(cls, config: TaskConfig, fork_type: ForkType) -> EngineResult[Self]:
        inputs_r = config.get_input_parameter_required('fork_task_inputs')
        if is_err(inputs_r):
            return inputs_r
        fork_inputs = inputs_r.ok_value
        if not isinstance(fork_inputs, list) or not all(
            isinstance(i, Mapping) for i in fork_inputs
        ):
            return illegal_argument(
                f'FORK_JOIN_DYNAMIC task {config.task_reference_name!r}: '
                'input fork_task_inputs must be a list of mappings'
            )

        if fork_type is ForkType.SAME_TASK:
            name = config.input_parameters['fork_task_name']
            if not isinstance(name, str) or not name.strip():
                return illegal_argument('input fork_task_name must be a non-empty string')
            record = cls(fork_type=fork_type, fork_task_name=name.strip())
        else:
            workflow = config.input_parameters['fork_task_workflow']
            if not isinstance(workflow, str) or not workflow.strip():
                return illegal_argument('input fork_task_workflow must be a non-empty string')
            version = config.get_input_parameter_optional('fork_task_workflow_version')
            if version is not None and not isinstance(version, int):
                return illegal_argument('input fork_task_workflow_version must be an integer')
            record = cls(
                fork_type=fork_type,
                fork_task_workflow=workflow.strip(),
                fork_task_workflow_version=version,
            )
        record._fork_inputs = [dict(i) for i in fork_inputs]
        return Ok(record)

    async def _same_task_target(
        self, ctx: ExecutionContext
    ) -> EngineResult[tuple[TaskType, Optional[TaskDefinition]]]:
        """TaskType named by fork_task_name, or SIMPLE plus the TaskDefinition it names."""
        name = self.fork_task_name or ''
        task_type = TaskType.parse(name)
        if task_type is not None:
            return Ok((task_type, None))
        found = await ctx.store.find_by_id(TaskDefinition, name)
        if is_err(found):
            if found.err_value.code is EngineErrorCode.NOT_FOUND:
                return not_found(f'No task type or task definition named: {name}')
            return found
        return Ok((TaskType.SIMPLE, found.ok_value))

    async def _child_configs(self, ctx: ExecutionContext) -> EngineResult[list[TaskConfig]]:
        match self.fork_type:
            case ForkType.DIFFERENT_TASK:
                return Ok(list(self._prebuilt))

            case ForkType.SAME_TASK:
                target = await self._same_task_target(ctx)
                if is_err(target):
                    return target
                task_type, definition = target.ok_value
                prefix = f'{DYNAMIC_FORK_TASK_PREFIX}_{self.fork_task_name}'
                # Children of a definition carry its name so map_task applies its settings.
                return Ok([
                    TaskConfig(
                        name=definition.name if definition is not None else prefix,
                        task_reference_name=f'{prefix}_{index}_ref',
                        task_type=task_type,
                        input_parameters=task_input,
                        retry_count=definition.retry_count if definition is not None else None,
                        domain=self.config.domain,
                    )
                    for index, task_input in enumerate(self._fork_inputs)
                ])

            case ForkType.SAME_TASK_SUB_WORKFLOW:
                workflow = self.fork_task_workflow or ''
                return Ok([
                    TaskConfig(
                        name=f'{DYNAMIC_FORK_SUBWORKFLOW_PREFIX}_{workflow}',
                        task_reference_name=(
                            f'{DYNAMIC_FORK_SUBWORKFLOW_PREFIX}_{workflow}_{index}_ref'
                        ),
                        task_type=TaskType.SUB_WORKFLOW,
                        input_parameters=task_input,
                        sub_workflow_param=SubWorkflowParams(
                            name=workflow,
                            version=self.fork_task_workflow_version,
                        ),
                        domain=self.config.domain,
                    )
                    for index, task_input in enumerate(self._fork_inputs)
                ])

    async def execute(self, ctx: ExecutionContext) -> EngineResult[TaskModel]:
        children = await self._child_configs(ctx)
        if is_err(children):
            return children
        spawned = await self.spawn(ctx, children.ok_value)
        if is_err(spawned):
            return spawned
        self.child_task_ids = spawned.ok_value
        logger.info(
            f'FORK_JOIN_DYNAMIC {self.config.task_reference_name} ({self.fork_type.value}) '
            f'spawned {len(self.child_task_ids)} task(s)'
        )
        return await super().execute(ctx)

    def prepare_task(self, model: TaskModel) -> EngineResult[None]:
        model.task_def_name = 'FORK'
        model.output_data = {'forked_task_ids': list(self.child_task_ids)}
        return Ok(None)


def _task_payloads(raw: Any) -> EngineResult[list[tuple[str, dict[str, Any]]]]:
    """Normalize a dynamic task map into ``(reference_name, payload)`` pairs.

    Accepts ``{ref: payload}`` or ``[payload, ...]`` where each payload carries
    its own ``task_reference_name``.
    """
    pairs: list[tuple[str, dict[str, Any]]] = []
    if isinstance(raw, Mapping):
        items = list(raw.items())
    elif isinstance(raw, list):
        items = []
        for payload in raw:
            if isinstance(payload, TaskConfig):
                payload = payload.model_dump(exclude={'id'})
            ref = payload.get('task_reference_name') if isinstance(payload, Mapping) else None
            if not ref:
                return illegal_argument(
                    'each dynamic fork task must carry a task_reference_name'
                )
            items.append((ref, payload))
    else:
        return illegal_argument('dynamic fork tasks must be a mapping or a list')

    for ref, payload in items:
        if isinstance(payload, TaskConfig):
            payload = payload.model_dump(exclude={'id'})
        if not isinstance(payload, Mapping):
            return illegal_argument(f'dynamic fork task {ref} must be a task config mapping')
        data = dict(payload)
        data.pop('id', None)
        data.setdefault('name', ref)
        pairs.append((str(ref), data))
    return Ok(pairs)


def _validate_child(data: dict[str, Any]) -> EngineResult[TaskConfig]:
    try:
        return Ok(TaskConfig.model_validate(data))
    except (ValidationError, TaskConfigError) as exc:
        ref = data.get('task_reference_name')
        return illegal_argument(f'dynamic fork task {ref} is not a valid task config: {exc}')
