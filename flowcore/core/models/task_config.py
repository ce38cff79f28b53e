# flowcore/core/models/task_config.py
from __future__ import annotations

from typing import Any, ClassVar, Optional, Union

from pydantic import BaseModel, Field, field_validator

from flowcore.core.errors import ErrorCode, TaskConfigError
from flowcore.core.models.base import Entity
from flowcore.core.result_types import EngineResult, illegal_argument
from flowcore.core.types.result import Ok
from flowcore.core.types.status import TaskStatus, TaskType


class SubWorkflowParams(BaseModel):
    """Which workflow a SUB_WORKFLOW node starts, and how."""

    name: str
    version: Optional[int] = None
    task_to_domain: dict[str, str] = Field(default_factory=dict)
    workflow_definition: Optional[dict[str, Any]] = None
    idempotency_key: Optional[str] = None
    idempotency_strategy: Optional[str] = None
    priority: Optional[int] = None


class CacheConfig(BaseModel):
    key: str
    ttl_in_second: int = Field(default=0, ge=0)


class TaskConfig(Entity):
    """
    One node of a workflow graph: the source of truth for the resolver.

    Stored flat. The kind-specific fields below are only meaningful for the
    ``task_type`` named next to them; each kind record validates its own
    subset in ``from_config`` and ignores the rest.

    - dynamic_task_name_param: DYNAMIC
    - evaluator_type / expression / case_value_param / decision_cases /
      default_case: SWITCH (evaluator_type and loop_condition also DO_WHILE)
    - fork_tasks: FORK_JOIN; branches of child configs or stored config ids
    - dynamic_fork_tasks_param / dynamic_fork_tasks_input_param_name:
      FORK_JOIN_DYNAMIC in DIFFERENT_TASK mode
    - join_on / join_status / default_exclusive_join_task: JOIN
    - loop_condition / loop_over: DO_WHILE
    - sub_workflow_param: SUB_WORKFLOW
    - sink: EVENT
    """

    entity_name: ClassVar[str] = 'TaskConfig'

    name: str
    task_reference_name: str
    task_type: TaskType = TaskType.SIMPLE
    description: Optional[str] = None
    optional: bool = False
    input_parameters: dict[str, Any] = Field(default_factory=dict)
    domain: Optional[str] = None
    start_delay: int = Field(default=0, ge=0)
    async_complete: bool = False
    rate_limited: Optional[bool] = None
    retry_count: Optional[int] = Field(default=None, ge=0)
    permissive: bool = False
    cache_config: Optional[CacheConfig] = None
    expected_wait_seconds: Optional[int] = None

    dynamic_task_name_param: Optional[str] = None

    evaluator_type: Optional[str] = None
    expression: Optional[str] = None
    case_value_param: Optional[str] = None
    decision_cases: Optional[dict[str, list[TaskConfig]]] = None
    default_case: Optional[list[TaskConfig]] = None

    fork_tasks: Optional[list[list[Union[TaskConfig, str]]]] = None

    dynamic_fork_tasks_param: Optional[str] = None
    dynamic_fork_tasks_input_param_name: Optional[str] = None

    join_on: Optional[list[str]] = None
    join_status: Optional[TaskStatus] = None
    default_exclusive_join_task: Optional[list[str]] = None

    loop_condition: Optional[str] = None
    loop_over: Optional[list[TaskConfig]] = None

    sub_workflow_param: Optional[SubWorkflowParams] = None

    sink: Optional[str] = None

    @field_validator('task_type', mode='before')
    @classmethod
    def _parse_task_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            parsed = TaskType.parse(v)
            if parsed is None:
                raise TaskConfigError(
                    message='unknown task type',
                    code=ErrorCode.TASK_CONFIG_UNKNOWN_TYPE,
                    notes=[f'got: {v!r}'],
                    help_text='use one of the TaskType values, e.g. SIMPLE or FORK_JOIN',
                )
            return parsed
        return v

    @field_validator('name', 'task_reference_name')
    @classmethod
    def _non_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('must not be blank')
        return v

    def get_input_parameter_required(self, key: str) -> EngineResult[Any]:
        """Input parameter ``key``, or ILLEGAL_ARGUMENT when absent or null."""
        value = self.input_parameters.get(key)
        if value is None:
            return illegal_argument(
                f'{self.task_type.value} task {self.task_reference_name!r} '
                f'requires input parameter: {key}'
            )
        return Ok(value)

    def get_input_parameter_optional(self, key: str) -> Any | None:
        return self.input_parameters.get(key)

    def child(self, **updates: Any) -> TaskConfig:
        """A new config (fresh id) derived from this one."""
        data = self.model_dump(exclude={'id'})
        data.update(updates)
        return TaskConfig.model_validate(data)
