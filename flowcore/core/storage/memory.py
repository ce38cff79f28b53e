"""In-memory TaskStore for tests and single-process embedding."""

from __future__ import annotations

import asyncio
import contextlib
from contextvars import ContextVar
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional

from flowcore.core.logging import get_logger
from flowcore.core.models.base import Entity
from flowcore.core.result_types import EngineResult, conflict, illegal_argument, not_found
from flowcore.core.storage.base import E, T, matches, not_found_message
from flowcore.core.types.result import Ok, is_err

logger = get_logger('store')

_Tables = dict[str, dict[Any, Entity]]


def _detached(entity: E) -> E:
    """Copy carrying only declared fields, as a database round trip would."""
    return type(entity).model_validate(entity.model_dump())


class InMemoryTaskStore:
    """
    Dict-backed TaskStore.

    Values are stored and returned as deep copies. ``atomic`` holds a lock for
    the whole unit so concurrent writers cannot interleave with a rollback;
    the lock is re-entrant for the task that owns it.
    """

    def __init__(self) -> None:
        self._tables: _Tables = {}
        self._lock = asyncio.Lock()
        self._in_unit: ContextVar[bool] = ContextVar(
            f'flowcore_memory_store_{id(self)}', default=False
        )

    def _table(self, entity_cls: type[Entity]) -> dict[Any, Entity]:
        return self._tables.setdefault(entity_cls.entity_name, {})

    @contextlib.asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        if self._in_unit.get():
            yield
            return
        async with self._lock:
            yield

    async def insert(self, entity: E) -> EngineResult[E]:
        async with self._guard():
            table = self._table(type(entity))
            key = entity.primary_key
            if key in table:
                return conflict(f'{entity.entity_name} with id {key} already exists')
            table[key] = _detached(entity)
            return Ok(entity.model_copy(deep=True))

    async def update(self, entity: E) -> EngineResult[E]:
        async with self._guard():
            table = self._table(type(entity))
            key = entity.primary_key
            current = table.get(key)
            if current is None:
                return not_found(not_found_message(type(entity), key))
            if entity.versioned:
                stored_version = getattr(current, 'version')
                if stored_version != getattr(entity, 'version'):
                    return conflict(
                        f'{entity.entity_name} {key} was modified concurrently '
                        f'(expected version {getattr(entity, "version")}, found {stored_version})'
                    )
                entity = entity.model_copy(update={'version': stored_version + 1}, deep=True)
            table[key] = _detached(entity)
            return Ok(entity.model_copy(deep=True))

    async def save(self, entity: E) -> EngineResult[E]:
        async with self._guard():
            table = self._table(type(entity))
            key = entity.primary_key
            current = table.get(key)
            if entity.versioned and current is not None:
                entity = entity.model_copy(
                    update={'version': getattr(current, 'version') + 1}, deep=True
                )
            table[key] = _detached(entity)
            return Ok(entity.model_copy(deep=True))

    async def delete(self, entity_cls: type[Entity], key: Any) -> EngineResult[None]:
        async with self._guard():
            table = self._table(entity_cls)
            if key not in table:
                return not_found(not_found_message(entity_cls, key))
            del table[key]
            return Ok(None)

    async def find_by_id(self, entity_cls: type[E], key: Any) -> EngineResult[E]:
        async with self._guard():
            found = self._table(entity_cls).get(key)
            if found is None or not isinstance(found, entity_cls):
                return not_found(not_found_message(entity_cls, key))
            return Ok(_detached(found))

    async def find(
        self,
        entity_cls: type[E],
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> EngineResult[list[E]]:
        if limit is not None and limit < 0:
            return illegal_argument(f'limit must be >= 0, got {limit}')
        async with self._guard():
            rows = [
                e for e in self._table(entity_cls).values()
                if isinstance(e, entity_cls) and matches(e, filters or {})
            ]
        if order_by is not None:
            # Stable sort keeps insertion order among equal keys.
            rows.sort(key=lambda e: getattr(e, order_by), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return Ok([_detached(e) for e in rows])  # type: ignore[misc]

    async def atomic(
        self, fn: Callable[[], Awaitable[EngineResult[T]]]
    ) -> EngineResult[T]:
        if self._in_unit.get():
            return await self._run_unit(fn)
        async with self._lock:
            token = self._in_unit.set(True)
            try:
                return await self._run_unit(fn)
            finally:
                self._in_unit.reset(token)

    async def _run_unit(
        self, fn: Callable[[], Awaitable[EngineResult[T]]]
    ) -> EngineResult[T]:
        # Stored values are replaced on write, never mutated, so copying the
        # per-table dicts is a complete snapshot.
        snapshot = {name: dict(table) for name, table in self._tables.items()}
        try:
            result = await fn()
        except BaseException:
            self._tables = snapshot
            raise
        if is_err(result):
            logger.debug(f'Rolling back unit of work: {result.err_value.message}')
            self._tables = snapshot
        return result
