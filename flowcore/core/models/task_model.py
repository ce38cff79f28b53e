# flowcore/core/models/task_model.py
from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, Field

from flowcore.core.defaults import DEFAULT_RESPONSE_TIMEOUT_SECONDS
from flowcore.core.models.base import Entity, utc_now
from flowcore.core.types.status import TaskStatus, TaskType


class TaskModel(Entity):
    """
    Persisted execution record shared by every task kind.

    - id: str # uuid4, also the item pushed onto the queue
    - task_type: TaskType # equals the owning TaskConfig.task_type
    - status: TaskStatus # SCHEDULED -> IN_PROGRESS -> terminal (see service)
    - kind_record_id: str # the one kind record this execution belongs to
    - task_config_id: str # the TaskConfig it was resolved from
    - reference_task_name: str # unique within workflow_instance_id
    - seq / correlation_id / workflow_* : workflow linkage
    - poll_count: int # incremented on each claim
    - worker_id / domain: who claimed it, set on poll
    - scheduled_time / start_time / end_time / update_time: lifecycle stamps
    - retry_count / retried / retried_task_id: retry bookkeeping
    - response_timeout_seconds: reaper times the task out after this long IN_PROGRESS
    - callback_after_seconds / wait_timeout: WAIT bookkeeping (wait_timeout is epoch seconds)
    - iteration: DO_WHILE loop counter
    - version: int # optimistic concurrency counter, bumped by every store write
    """

    entity_name: ClassVar[str] = 'TaskModel'
    versioned: ClassVar[bool] = True

    task_type: TaskType
    status: TaskStatus = TaskStatus.SCHEDULED
    kind_record_id: Optional[str] = None
    task_config_id: Optional[str] = None
    task_def_name: Optional[str] = None
    reference_task_name: Optional[str] = None
    seq: int = 0
    correlation_id: Optional[str] = None
    poll_count: int = 0

    scheduled_time: datetime = Field(default_factory=utc_now)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    update_time: datetime = Field(default_factory=utc_now)
    start_delay_in_seconds: int = 0

    retried_task_id: Optional[str] = None
    retried: bool = False
    retry_count: int = 0
    executed: bool = False
    callback_from_worker: bool = True
    response_timeout_seconds: int = DEFAULT_RESPONSE_TIMEOUT_SECONDS
    callback_after_seconds: int = 0
    wait_timeout: Optional[int] = None

    workflow_instance_id: Optional[str] = None
    workflow_type: Optional[str] = None
    workflow_priority: int = 0
    reason_for_incompletion: Optional[str] = None

    worker_id: Optional[str] = None
    domain: Optional[str] = None
    input_data: dict[str, Any] = Field(default_factory=dict)
    output_data: dict[str, Any] = Field(default_factory=dict)
    external_input_payload_storage_path: Optional[str] = None
    external_output_payload_storage_path: Optional[str] = None

    rate_limit_per_frequency: Optional[int] = None
    rate_limit_frequency_in_seconds: Optional[int] = None
    execution_name_space: Optional[str] = None
    isolation_group_id: Optional[str] = None
    iteration: int = 0
    subworkflow_changed: bool = False

    version: int = 1

    def queue_name(self) -> str:
        return queue_name_for(self.task_type, self.domain)


def queue_name_for(task_type: TaskType, domain: Optional[str] = None) -> str:
    """Queue a kind is dispatched on: ``SIMPLE`` or ``<domain>:SIMPLE``."""
    if domain:
        return f'{domain}:{task_type.value}'
    return task_type.value


class TaskUpdate(BaseModel):
    """
    A worker's report on a TaskModel it polled.

    - status: target status, validated against the transition table
    - output_data: replaces the task output when given
    - logs: appended as TaskExecutionLog lines after the update commits
    - version: when given, must equal the stored version (CONFLICT otherwise)
    """

    task_id: str
    status: TaskStatus
    output_data: Optional[dict[str, Any]] = None
    reason_for_incompletion: Optional[str] = None
    callback_after_seconds: Optional[int] = Field(default=None, ge=0)
    worker_id: Optional[str] = None
    logs: list[str] = Field(default_factory=list)
    version: Optional[int] = None
