# flowcore/core/models/base.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Entity(BaseModel):
    """Base for every record the TaskStore persists.

    - entity_name: name used in store tables and NOT_FOUND messages
    - key_field: attribute holding the primary key
    - versioned: whether TaskStore.update enforces optimistic concurrency
      through a ``version`` attribute
    """

    model_config = ConfigDict(validate_assignment=False, extra='ignore')

    entity_name: ClassVar[str] = 'Entity'
    key_field: ClassVar[str] = 'id'
    versioned: ClassVar[bool] = False

    id: str = Field(default_factory=new_id)

    @property
    def primary_key(self) -> Any:
        return getattr(self, self.key_field)
