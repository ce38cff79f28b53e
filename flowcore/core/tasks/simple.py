# flowcore/core/tasks/simple.py
from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar, Optional, Self

from flowcore.core.models.definition import TaskDefinition
from flowcore.core.models.task_config import TaskConfig
from flowcore.core.models.task_model import TaskModel
from flowcore.core.result_types import EngineErrorCode, EngineResult, illegal_argument
from flowcore.core.tasks.base import TaskKindRecord
from flowcore.core.types.result import Ok, is_err
from flowcore.core.types.status import TaskType

if TYPE_CHECKING:
    from flowcore.core.context import ExecutionContext


class SimpleRecord(TaskKindRecord):
    """SIMPLE: executed by an external worker polling the SIMPLE queue."""

    task_type: ClassVar[TaskType] = TaskType.SIMPLE


class DynamicRecord(TaskKindRecord):
    """
    DYNAMIC: the task to run is named at runtime by the input that
    ``dynamic_task_name_param`` points at. That name becomes the TaskModel's
    ``task_def_name`` so the matching TaskDefinition is applied.
    """

    task_type: ClassVar[TaskType] = TaskType.DYNAMIC

    dynamic_task_name: str

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        required = cls.require(config, fields=('dynamic_task_name_param',))
        if is_err(required):
            return required
        named = config.get_input_parameter_required(config.dynamic_task_name_param or '')
        if is_err(named):
            return named
        task_name = named.ok_value
        if not isinstance(task_name, str) or not task_name.strip():
            return illegal_argument(
                f'input {config.dynamic_task_name_param} must name a task, got {task_name!r}'
            )

        sub_name: Optional[str] = config.get_input_parameter_optional('sub_workflow_name')
        sub_version = config.get_input_parameter_optional('sub_workflow_version')
        if (sub_name is not None or sub_version is not None) and (
            TaskType.parse(task_name) is not TaskType.SUB_WORKFLOW
        ):
            return illegal_argument(
                f'DYNAMIC task {config.task_reference_name!r}: sub_workflow_name/version '
                f'are only allowed when the dynamic task is SUB_WORKFLOW, not {task_name!r}'
            )
        return Ok(cls(dynamic_task_name=task_name.strip()))

    async def get_task_def(
        self, ctx: ExecutionContext
    ) -> EngineResult[Optional[TaskDefinition]]:
        found = await ctx.store.find_by_id(TaskDefinition, self.dynamic_task_name)
        if is_err(found):
            if found.err_value.code is EngineErrorCode.NOT_FOUND:
                return Ok(None)
            return found
        return Ok(found.ok_value)

    def prepare_task(self, model: TaskModel) -> EngineResult[None]:
        model.task_def_name = self.dynamic_task_name
        return Ok(None)
