# flowcore/core/models/logs.py
from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, Optional

from pydantic import Field

from flowcore.core.models.base import Entity, utc_now

DEFAULT_DOMAIN = 'DEFAULT'


class TaskExecutionLog(Entity):
    """Append-only free-text log line for one TaskModel."""

    entity_name: ClassVar[str] = 'TaskExecutionLog'

    task_id: str
    log: str
    created_time: datetime = Field(default_factory=utc_now)


class PollData(Entity):
    """
    Per-queue polling bookkeeping, keyed by (queue_name, domain).

    Observability only; never consulted for scheduling decisions.
    """

    entity_name: ClassVar[str] = 'PollData'

    queue_name: str
    domain: str = DEFAULT_DOMAIN
    worker_id: Optional[str] = None
    last_poll_time: datetime = Field(default_factory=utc_now)
    created_on: datetime = Field(default_factory=utc_now)
    modified_on: datetime = Field(default_factory=utc_now)
    json_data: dict[str, Any] = Field(default_factory=dict)

    @staticmethod
    def key_for(queue_name: str, domain: Optional[str] = None) -> str:
        """Deterministic id so concurrent pollers upsert the same row."""
        return f'{domain or DEFAULT_DOMAIN}:{queue_name}'
