# flowcore/core/tasks/join.py
from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar, Optional, Self

from pydantic import Field

from flowcore.core.logging import get_logger
from flowcore.core.models.base import utc_now
from flowcore.core.models.task_config import TaskConfig
from flowcore.core.models.task_model import TaskModel
from flowcore.core.result_types import EngineResult
from flowcore.core.tasks.base import TaskKindRecord
from flowcore.core.types.result import Ok, is_err
from flowcore.core.types.status import TaskStatus, TaskType

if TYPE_CHECKING:
    from flowcore.core.context import ExecutionContext

logger = get_logger('join')


class JoinRecord(TaskKindRecord):
    """
    JOIN: a gate that waits for the tasks named in ``join_on``.

    Created IN_PROGRESS and never queued. ``check`` re-evaluates the gate
    against the latest TaskModel of each awaited reference in the same
    workflow instance:
    - any reference missing or not terminal: stays IN_PROGRESS
    - all terminal and matching ``join_status`` (or any terminal when no
      join_status): COMPLETED with ``{ref: output_data}``
    - otherwise FAILED
    """

    task_type: ClassVar[TaskType] = TaskType.JOIN
    initial_status: ClassVar[TaskStatus] = TaskStatus.IN_PROGRESS
    queued: ClassVar[bool] = False

    join_on: list[str] = Field(default_factory=list)
    join_status: Optional[TaskStatus] = None

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        required = cls.require(config, fields=('join_on',))
        if is_err(required):
            return required
        return Ok(cls(join_on=list(config.join_on or []), join_status=config.join_status))

    def prepare_task(self, model: TaskModel) -> EngineResult[None]:
        model.input_data = {**model.input_data, 'joinOn': list(self.join_on)}
        return Ok(None)

    async def _awaited(self, ctx: ExecutionContext, model: TaskModel) -> EngineResult[dict[str, TaskModel]]:
        """Latest TaskModel per awaited reference (highest iteration, then newest)."""
        found = await ctx.store.find(
            TaskModel,
            {
                'workflow_instance_id': model.workflow_instance_id,
                'reference_task_name': list(self.join_on),
            },
            order_by='scheduled_time',
        )
        if is_err(found):
            return found
        latest: dict[str, TaskModel] = {}
        for task in found.ok_value:
            ref = task.reference_task_name or ''
            current = latest.get(ref)
            if current is None or task.iteration >= current.iteration:
                latest[ref] = task
        return Ok(latest)

    async def check(self, ctx: ExecutionContext) -> EngineResult[TaskModel]:
        """Evaluate the gate once and persist the outcome. Idempotent once terminal."""
        loaded = await ctx.store.find_by_id(TaskModel, self.task_model_id)
        if is_err(loaded):
            return loaded
        model = loaded.ok_value
        if model.status.is_terminal:
            return Ok(model)

        awaited = await self._awaited(ctx, model)
        if is_err(awaited):
            return awaited
        tasks = awaited.ok_value

        pending = [ref for ref in self.join_on if ref not in tasks or not tasks[ref].status.is_terminal]
        if pending:
            logger.debug(f'JOIN {model.reference_task_name} still waiting on {", ".join(pending)}')
            return Ok(model)

        mismatched = []
        if self.join_status is not None:
            mismatched = [ref for ref in self.join_on if tasks[ref].status is not self.join_status]

        now = utc_now()
        if mismatched:
            model.status = TaskStatus.FAILED
            model.reason_for_incompletion = (
                f'Joined tasks did not reach {self.join_status.value}: '
                + ', '.join(f'{ref}={tasks[ref].status.value}' for ref in mismatched)
            )
        else:
            model.status = TaskStatus.COMPLETED
            model.output_data = {ref: tasks[ref].output_data for ref in self.join_on}
        model.end_time = now
        model.update_time = now
        model.executed = True

        updated = await ctx.store.update(model)
        if is_err(updated):
            return updated
        logger.info(f'JOIN {model.reference_task_name} -> {model.status.value}')
        return updated
