# flowcore/core/models/definition.py
from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, Optional

from pydantic import Field

from flowcore.core.models.base import Entity, utc_now
from flowcore.core.types.status import RetryLogic, TimeoutPolicy


class TaskDefinition(Entity):
    """
    Named, reusable metadata for a task kind. Identity is ``name``.

    Read by kind records during map_task to seed retry, timeout and rate-limit
    settings of the TaskModel. Never mutated by the engine.
    """

    entity_name: ClassVar[str] = 'TaskDefinition'
    key_field: ClassVar[str] = 'name'

    name: str
    description: Optional[str] = None
    retry_count: int = Field(default=3, ge=0)
    timeout_seconds: int = Field(default=0, ge=0)
    timeout_policy: TimeoutPolicy = TimeoutPolicy.TIME_OUT_WF
    retry_logic: RetryLogic = RetryLogic.FIXED
    retry_delay_seconds: int = Field(default=60, ge=0)
    response_timeout_seconds: int = Field(default=3600, ge=1)
    backoff_scale_factor: int = Field(default=1, ge=1)
    concurrent_exec_limit: Optional[int] = None
    rate_limit_per_frequency: Optional[int] = None
    rate_limit_frequency_in_seconds: Optional[int] = None
    poll_timeout_seconds: Optional[int] = None
    isolation_group_id: Optional[str] = None
    execution_name_space: Optional[str] = None
    owner_email: Optional[str] = None
    enforce_schema: bool = False
    input_schema: Optional[dict[str, Any]] = None
    output_schema: Optional[dict[str, Any]] = None
    input_keys: list[str] = Field(default_factory=list)
    output_keys: list[str] = Field(default_factory=list)
    input_template: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
