# flowcore/core/tasks/workflow.py
"""Kinds that start or stop workflows. Queued for the workflow runner."""

from __future__ import annotations

from typing import Any, ClassVar, Optional, Self

from pydantic import Field

from flowcore.core.models.task_config import SubWorkflowParams, TaskConfig
from flowcore.core.models.task_model import TaskModel
from flowcore.core.result_types import EngineResult, illegal_argument
from flowcore.core.tasks.base import TaskKindRecord
from flowcore.core.types.result import Ok, is_err
from flowcore.core.types.status import TaskType


class SubWorkflowRecord(TaskKindRecord):
    task_type: ClassVar[TaskType] = TaskType.SUB_WORKFLOW

    sub_workflow_name: str
    sub_workflow_version: Optional[int] = None
    sub_workflow_id: Optional[str] = None

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        params: Optional[SubWorkflowParams] = config.sub_workflow_param
        if params is None or not params.name.strip():
            return illegal_argument(
                f'SUB_WORKFLOW task {config.task_reference_name!r} '
                'requires sub_workflow_param with a name'
            )
        if params.idempotency_key and not params.idempotency_strategy:
            return illegal_argument(
                f'SUB_WORKFLOW task {config.task_reference_name!r}: '
                'idempotency_key requires idempotency_strategy'
            )
        return Ok(cls(sub_workflow_name=params.name.strip(), sub_workflow_version=params.version))

    def prepare_task(self, model: TaskModel) -> EngineResult[None]:
        model.input_data = {
            **model.input_data,
            'subWorkflowName': self.sub_workflow_name,
            'subWorkflowVersion': self.sub_workflow_version,
        }
        return Ok(None)


class StartWorkflowRecord(TaskKindRecord):
    """START_WORKFLOW: fire-and-forget start of the workflow named by input ``name``."""

    task_type: ClassVar[TaskType] = TaskType.START_WORKFLOW

    workflow_name: str
    workflow_version: Optional[int] = None

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        name = config.get_input_parameter_required('name')
        if is_err(name):
            return name
        if not isinstance(name.ok_value, str) or not name.ok_value.strip():
            return illegal_argument('START_WORKFLOW input name must be a non-empty string')
        version = config.get_input_parameter_optional('version')
        if version is not None and not isinstance(version, int):
            return illegal_argument('START_WORKFLOW input version must be an integer')
        return Ok(cls(workflow_name=name.ok_value.strip(), workflow_version=version))


class TerminateWorkflowRecord(TaskKindRecord):
    task_type: ClassVar[TaskType] = TaskType.TERMINATE_WORKFLOW

    workflow_ids: list[str] = Field(default_factory=list)
    trigger_failure_workflow: bool = False
    termination_reason: Optional[str] = None

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        required = cls.require(config, inputs=('workflow_id', 'trigger_failure_workflow'))
        if is_err(required):
            return required
        raw: Any = config.input_parameters['workflow_id']
        # A single id is accepted as a one-element list.
        ids = [raw] if isinstance(raw, str) else raw
        if not isinstance(ids, list) or not all(isinstance(i, str) and i for i in ids):
            return illegal_argument(
                'TERMINATE_WORKFLOW input workflow_id must be a list of workflow ids'
            )
        trigger = config.input_parameters['trigger_failure_workflow']
        if not isinstance(trigger, bool):
            return illegal_argument(
                'TERMINATE_WORKFLOW input trigger_failure_workflow must be a boolean'
            )
        return Ok(cls(
            workflow_ids=ids,
            trigger_failure_workflow=trigger,
            termination_reason=config.get_input_parameter_optional('termination_reason'),
        ))
