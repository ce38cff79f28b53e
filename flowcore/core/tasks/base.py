# flowcore/core/tasks/base.py
"""TaskMapper contract shared by every task kind record.

A kind record is built from a TaskConfig by ``from_config`` (pure
validation, no I/O), then ``execute`` creates its TaskModel and persists
both. Fan-out kinds resolve children inside ``execute`` and remember them in
``spawned`` so the resolver can queue them once the unit of work commits.
"""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING, Any, ClassVar, Optional, Self

from pydantic import PrivateAttr

from flowcore.core.defaults import REDACTED_VALUE
from flowcore.core.logging import get_logger
from flowcore.core.models.base import Entity, utc_now
from flowcore.core.models.definition import TaskDefinition
from flowcore.core.models.task_config import TaskConfig
from flowcore.core.models.task_model import TaskModel, queue_name_for
from flowcore.core.result_types import (
    EngineErrorCode,
    EngineResult,
    illegal_argument,
)
from flowcore.core.types.result import Ok, is_err
from flowcore.core.types.status import TaskStatus, TaskType

if TYPE_CHECKING:
    from flowcore.core.context import ExecutionContext

logger = get_logger('tasks')

_KIND_REGISTRY: dict[TaskType, type['TaskKindRecord']] = {}


def _is_blank(value: Any) -> bool:
    return value is None or value == '' or value == [] or value == {}


def _redact(params: dict[str, Any], paths: tuple[tuple[str, ...], ...]) -> dict[str, Any]:
    """Copy of ``params`` with the value at each key path replaced by REDACTED_VALUE."""
    redacted = copy.deepcopy(params)
    for path in paths:
        node: Any = redacted
        for key in path[:-1]:
            node = node.get(key) if isinstance(node, dict) else None
        if isinstance(node, dict) and path[-1] in node:
            node[path[-1]] = REDACTED_VALUE
    return redacted


class TaskKindRecord(Entity):
    """
    Base for the ~25 task kinds.

    Class-level contract each kind declares:
    - task_type: the TaskType it handles (also its queue name)
    - initial_status: status its TaskModel is created with
    - queued: whether the TaskModel is pushed for external pollers
    - secret_inputs: input_parameters key paths never written to storage
    """

    entity_name: ClassVar[str] = 'TaskKindRecord'
    task_type: ClassVar[TaskType]
    initial_status: ClassVar[TaskStatus] = TaskStatus.SCHEDULED
    queued: ClassVar[bool] = True
    secret_inputs: ClassVar[tuple[tuple[str, ...], ...]] = ()

    task_model_id: Optional[str] = None
    task_config_id: Optional[str] = None

    _config: Optional[TaskConfig] = PrivateAttr(default=None)
    _workflow_instance_id: Optional[str] = PrivateAttr(default=None)
    _iteration: int = PrivateAttr(default=0)
    _priority: int = PrivateAttr(default=0)
    _spawned: list['TaskKindRecord'] = PrivateAttr(default_factory=list)

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        task_type = cls.__dict__.get('task_type')
        if isinstance(task_type, TaskType):
            _KIND_REGISTRY[task_type] = cls

    @staticmethod
    def record_class_for(task_type: TaskType) -> type[TaskKindRecord]:
        """Kind record class registered for ``task_type``.

        Raises KeyError for the unimplemented kinds; the resolver rejects
        those before getting here.
        """
        return _KIND_REGISTRY[task_type]

    @staticmethod
    def registered_types() -> frozenset[TaskType]:
        return frozenset(_KIND_REGISTRY)

    # ----------------- Construction -----------------

    @classmethod
    def from_config(
        cls,
        config: TaskConfig,
        *,
        workflow_instance_id: Optional[str] = None,
        iteration: int = 0,
        priority: int = 0,
    ) -> EngineResult[Self]:
        """Validate ``config`` and build an unsaved record bound to it."""
        if config.task_type is not cls.task_type:
            return illegal_argument(
                f'{cls.__name__} cannot be built from a {config.task_type.value} config'
            )
        built = cls.build(config)
        if is_err(built):
            return built
        record = built.ok_value
        record.task_config_id = config.id
        record._config = config
        record._workflow_instance_id = workflow_instance_id
        record._iteration = iteration
        record._priority = priority
        return Ok(record)

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        """Kind-specific validation. Override to check fields and copy state."""
        return Ok(cls())

    @staticmethod
    def require(
        config: TaskConfig,
        *,
        fields: tuple[str, ...] = (),
        inputs: tuple[str, ...] = (),
    ) -> EngineResult[None]:
        """ILLEGAL_ARGUMENT naming every absent config field and input parameter."""
        missing = [f for f in fields if _is_blank(getattr(config, f))]
        missing += [
            f'input_parameters.{k}'
            for k in inputs
            if _is_blank(config.get_input_parameter_optional(k))
        ]
        if missing:
            return illegal_argument(
                f'{config.task_type.value} task {config.task_reference_name!r} '
                f'is missing required fields: {", ".join(missing)}'
            )
        return Ok(None)

    @property
    def config(self) -> TaskConfig:
        if self._config is None:
            raise RuntimeError(
                f'{type(self).__name__} {self.id} is not bound to a TaskConfig; '
                'build it with from_config()'
            )
        return self._config

    async def bind(self, ctx: ExecutionContext) -> EngineResult[TaskModel]:
        """Re-attach a stored record to its config and workflow context.

        Records loaded from the store carry only their persisted fields.
        Returns the record's current TaskModel.
        """
        if self.task_model_id is None:
            return illegal_argument(f'{self.task_type.value} record {self.id} has no TaskModel')
        model = await ctx.store.find_by_id(TaskModel, self.task_model_id)
        if is_err(model):
            return model
        if self._config is None:
            config = await ctx.store.find_by_id(TaskConfig, self.task_config_id)
            if is_err(config):
                return config
            self._config = config.ok_value
        self._workflow_instance_id = model.ok_value.workflow_instance_id
        self._iteration = model.ok_value.iteration
        self._priority = model.ok_value.workflow_priority
        return model

    def stored_config(self) -> TaskConfig:
        """The bound config as it is persisted, with secret inputs redacted."""
        config = self.config
        if not self.secret_inputs:
            return config
        return config.model_copy(
            update={'input_parameters': _redact(config.input_parameters, self.secret_inputs)}
        )

    @property
    def spawned(self) -> list[TaskKindRecord]:
        """Child records resolved by this record's execute, in creation order."""
        return self._spawned

    async def spawn(
        self,
        ctx: ExecutionContext,
        configs: list[TaskConfig],
        *,
        iteration: Optional[int] = None,
    ) -> EngineResult[list[str]]:
        """Resolve child configs inside the caller's unit of work.

        Every child is validated before the first one is persisted. Children
        inherit this record's workflow instance. Returns their TaskModel ids
        in order.
        """
        from flowcore.core.tasks.resolver import persist_record, to_task

        records: list[TaskKindRecord] = []
        for child in configs:
            built = to_task(
                child,
                workflow_instance_id=self._workflow_instance_id,
                iteration=self._iteration if iteration is None else iteration,
                priority=self._priority,
            )
            if is_err(built):
                return built
            records.append(built.ok_value)

        task_ids: list[str] = []
        for record in records:
            persisted = await persist_record(record, ctx)
            if is_err(persisted):
                return persisted
            self._spawned.append(record)
            task_ids.append(record.task_model_id or '')
        return Ok(task_ids)

    # ----------------- TaskMapper -----------------

    def get_task_type(self) -> TaskType:
        return self.task_type

    def get_primary_key(self) -> str:
        return self.id

    async def get_task_def(
        self, ctx: ExecutionContext
    ) -> EngineResult[Optional[TaskDefinition]]:
        """TaskDefinition named like the config, if one is registered."""
        found = await ctx.store.find_by_id(TaskDefinition, self.config.name)
        if is_err(found):
            if found.err_value.code is EngineErrorCode.NOT_FOUND:
                return Ok(None)
            return found
        return Ok(found.ok_value)

    def new_task(self) -> TaskModel:
        config = self.config
        now = utc_now()
        return TaskModel(
            task_type=self.task_type,
            status=self.initial_status,
            kind_record_id=self.id,
            task_config_id=config.id,
            task_def_name=config.name,
            reference_task_name=config.task_reference_name,
            workflow_instance_id=self._workflow_instance_id,
            input_data=_redact(config.input_parameters, self.secret_inputs),
            start_delay_in_seconds=config.start_delay,
            domain=config.domain,
            iteration=self._iteration,
            workflow_priority=self._priority,
            scheduled_time=now,
            update_time=now,
        )

    async def add_to_queue(self, ctx: ExecutionContext) -> EngineResult[None]:
        """Push the owning TaskModel id onto the queue named by the task type.

        The push carries the workflow priority and holds the task back for the
        config's ``start_delay`` seconds.
        """
        if self.task_model_id is None:
            return illegal_argument(
                f'{self.task_type.value} record {self.id} has no TaskModel; execute it first'
            )
        config = self.config
        return await ctx.queue.push(
            queue_name_for(self.task_type, config.domain),
            self.task_model_id,
            priority=self._priority,
            delay_seconds=config.start_delay,
        )

    async def map_task(
        self, ctx: ExecutionContext, model: TaskModel
    ) -> EngineResult[TaskModel]:
        """Fill generic TaskModel fields and persist it."""
        definition = await self.get_task_def(ctx)
        if is_err(definition):
            return definition
        if definition.ok_value is not None:
            _apply_definition(model, definition.ok_value)

        if model.status is TaskStatus.IN_PROGRESS:
            model.start_time = model.scheduled_time
        elif model.status.is_terminal:
            model.start_time = model.scheduled_time
            model.end_time = model.scheduled_time
            model.executed = True

        prepared = self.prepare_task(model)
        if is_err(prepared):
            return prepared
        return await ctx.store.insert(model)

    def prepare_task(self, model: TaskModel) -> EngineResult[None]:
        """Kind-specific TaskModel adjustments made before it is first stored."""
        return Ok(None)

    async def execute(self, ctx: ExecutionContext) -> EngineResult[TaskModel]:
        """Create and persist this task's own TaskModel, then the record itself."""
        mapped = await self.map_task(ctx, self.new_task())
        if is_err(mapped):
            return mapped
        self.task_model_id = mapped.ok_value.id
        saved = await ctx.store.insert(self)
        if is_err(saved):
            return saved
        logger.debug(
            f'{self.task_type.value} {self.config.task_reference_name} -> '
            f'task {self.task_model_id} ({mapped.ok_value.status.value})'
        )
        return mapped


def _apply_definition(model: TaskModel, definition: TaskDefinition) -> None:
    model.response_timeout_seconds = definition.response_timeout_seconds
    model.rate_limit_per_frequency = definition.rate_limit_per_frequency
    model.rate_limit_frequency_in_seconds = definition.rate_limit_frequency_in_seconds
    model.isolation_group_id = definition.isolation_group_id
    model.execution_name_space = definition.execution_name_space
