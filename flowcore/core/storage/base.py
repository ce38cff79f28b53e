"""Persistence provider interface consumed by the engine."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, TypeVar

from flowcore.core.models.base import Entity
from flowcore.core.result_types import EngineResult

E = TypeVar('E', bound=Entity)
T = TypeVar('T')


class TaskStore(Protocol):
    """Failable CRUD over every engine entity (TaskDefinition, TaskConfig,
    TaskModel, TaskKindRecord, TaskExecutionLog, PollData).

    Entities are looked up by ``entity_cls.key_field``. Returned entities are
    copies: mutating one never changes stored state until it is written back.

    ``update`` on a versioned entity (TaskModel) succeeds only when the given
    ``version`` matches the stored one and returns the entity with its
    version bumped; a mismatch is CONFLICT. ``save`` is an unconditional upsert.
    """

    async def insert(self, entity: E) -> EngineResult[E]: ...

    async def update(self, entity: E) -> EngineResult[E]: ...

    async def save(self, entity: E) -> EngineResult[E]: ...

    async def delete(self, entity_cls: type[Entity], key: Any) -> EngineResult[None]: ...

    async def find_by_id(self, entity_cls: type[E], key: Any) -> EngineResult[E]: ...

    async def find(
        self,
        entity_cls: type[E],
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> EngineResult[list[E]]:
        """Entities whose attributes equal every filter value.

        A list/tuple/set/frozenset filter value matches any of its members.
        """
        ...

    async def atomic(
        self, fn: Callable[[], Awaitable[EngineResult[T]]]
    ) -> EngineResult[T]:
        """Run ``fn`` as one unit of work.

        Every write made inside ``fn`` is discarded when it returns ``Err`` or
        raises. Nested calls behave as savepoints of the outer unit.
        """
        ...


def not_found_message(entity_cls: type[Entity], key: Any) -> str:
    return f'Could not find {entity_cls.entity_name} with id: {key}'


def matches(entity: Entity, filters: Mapping[str, Any]) -> bool:
    """In-process evaluation of ``TaskStore.find`` filters."""
    for field_name, expected in filters.items():
        actual = getattr(entity, field_name, None)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True
