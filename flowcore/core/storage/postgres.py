# flowcore/core/storage/postgres.py
from __future__ import annotations

import contextlib
import hashlib
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional

from sqlalchemy import DateTime, delete, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from flowcore.core.logging import get_logger
from flowcore.core.models.base import Entity
from flowcore.core.models.definition import TaskDefinition
from flowcore.core.models.logs import PollData, TaskExecutionLog
from flowcore.core.models.task_config import TaskConfig
from flowcore.core.models.task_model import TaskModel
from flowcore.core.result_types import (
    EngineResult,
    conflict,
    illegal_argument,
    not_found,
)
from flowcore.core.storage.base import E, T, not_found_message
from flowcore.core.storage.tables import (
    Base,
    PollDataRow,
    TaskConfigRow,
    TaskDefinitionRow,
    TaskExecutionLogRow,
    TaskKindRecordRow,
    TaskModelRow,
)
from flowcore.core.tasks.base import TaskKindRecord
from flowcore.core.types.result import Err, Ok, is_err
from flowcore.core.types.status import TaskType
from flowcore.core.utils.db import to_engine_error

logger = get_logger('store')

_KIND_ROW_COLUMNS = ('id', 'task_model_id', 'task_config_id')


def _column_values(entity: Entity, row_cls: type[Base]) -> dict[str, Any]:
    """Entity fields keyed by column name.

    DateTime columns get Python datetimes; everything else gets the JSON-mode
    dump so enums become their values and JSONB payloads stay serializable.
    """
    py = entity.model_dump()
    js = entity.model_dump(mode='json')
    values: dict[str, Any] = {}
    for column in row_cls.__table__.columns:
        if column.key not in py:
            continue
        values[column.key] = py[column.key] if isinstance(column.type, DateTime) else js[column.key]
    return values


def _row_values(row: Base) -> dict[str, Any]:
    return {c.key: getattr(row, c.key) for c in row.__table__.columns}


@dataclass(frozen=True)
class _Mapping:
    entity_cls: type[Entity]
    row_cls: type[Base]
    to_row: Callable[[Any], dict[str, Any]]
    from_row: Callable[[Any], Entity]
    filterable: frozenset[str]


def _direct(entity_cls: type[Entity], row_cls: type[Base]) -> _Mapping:
    return _Mapping(
        entity_cls=entity_cls,
        row_cls=row_cls,
        to_row=lambda e: _column_values(e, row_cls),
        from_row=lambda r: entity_cls.model_validate(_row_values(r)),
        filterable=frozenset(c.key for c in row_cls.__table__.columns),
    )


def _config_to_row(config: Entity) -> dict[str, Any]:
    body = config.model_dump(mode='json')
    return {
        'id': body['id'],
        'name': body['name'],
        'task_reference_name': body['task_reference_name'],
        'task_type': body['task_type'],
        'body': body,
    }


def _kind_to_row(record: TaskKindRecord) -> dict[str, Any]:
    state = record.model_dump(mode='json', exclude=set(_KIND_ROW_COLUMNS))
    return {
        'id': record.id,
        'task_type': record.task_type.value,
        'task_model_id': record.task_model_id,
        'task_config_id': record.task_config_id,
        'state': state,
    }


def _kind_from_row(row: Any) -> Entity:
    record_cls = TaskKindRecord.record_class_for(TaskType(row.task_type))
    data = dict(row.state)
    data.update({k: getattr(row, k) for k in _KIND_ROW_COLUMNS})
    return record_cls.model_validate(data)


_MAPPINGS: dict[str, _Mapping] = {
    TaskDefinition.entity_name: _direct(TaskDefinition, TaskDefinitionRow),
    TaskModel.entity_name: _direct(TaskModel, TaskModelRow),
    TaskExecutionLog.entity_name: _direct(TaskExecutionLog, TaskExecutionLogRow),
    PollData.entity_name: _direct(PollData, PollDataRow),
    TaskConfig.entity_name: _Mapping(
        entity_cls=TaskConfig,
        row_cls=TaskConfigRow,
        to_row=_config_to_row,
        from_row=lambda r: TaskConfig.model_validate(r.body),
        filterable=frozenset({'id', 'name', 'task_reference_name', 'task_type'}),
    ),
    TaskKindRecord.entity_name: _Mapping(
        entity_cls=TaskKindRecord,
        row_cls=TaskKindRecordRow,
        to_row=_kind_to_row,
        from_row=_kind_from_row,
        filterable=frozenset({'id', 'task_type', 'task_model_id', 'task_config_id'}),
    ),
}


def _filter_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class PostgresTaskStore:
    """
    TaskStore over PostgreSQL via SQLAlchemy asyncio + psycopg.

    Every operation opens its own session and commits, unless it runs inside
    ``atomic``, in which case it joins the unit's session (held in a
    contextvar) and only flushes. Nested ``atomic`` calls use SAVEPOINTs.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = async_sessionmaker(engine, expire_on_commit=False)
        self._active: ContextVar[Optional[AsyncSession]] = ContextVar(
            f'flowcore_pg_store_{id(self)}', default=None
        )

    def _schema_advisory_key(self) -> int:
        """Stable 64-bit advisory lock key guarding DDL across processes."""
        basis = str(self.engine.url).encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'flowcore-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def ensure_schema(self) -> EngineResult[None]:
        """Create every flowcore table. Safe to call concurrently from many processes."""
        try:
            async with self.engine.begin() as conn:
                await conn.execute(
                    text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))'),
                    {'key': self._schema_advisory_key()},
                )
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            return Err(to_engine_error(exc, 'schema initialization'))
        logger.info('Schema initialized')
        return Ok(None)

    @contextlib.asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        active = self._active.get()
        if active is not None:
            yield active
            await active.flush()
            return
        async with self.session_factory() as session:
            yield session
            await session.commit()

    def _mapping(self, entity_cls: type[Entity]) -> _Mapping:
        return _MAPPINGS[entity_cls.entity_name]

    def _row_for(self, entity: Entity) -> EngineResult[tuple[_Mapping, dict[str, Any]]]:
        """Column values for ``entity``. ILLEGAL_ARGUMENT when its type is not stored here."""
        mapping = _MAPPINGS.get(entity.entity_name)
        if mapping is None or not isinstance(entity, mapping.entity_cls):
            return illegal_argument(
                f'{type(entity).__name__} cannot be stored as {entity.entity_name}'
            )
        return Ok((mapping, mapping.to_row(entity)))

    async def insert(self, entity: E) -> EngineResult[E]:
        prepared = self._row_for(entity)
        if is_err(prepared):
            return prepared
        mapping, values = prepared.ok_value
        try:
            async with self._session() as session:
                session.add(mapping.row_cls(**values))
                await session.flush()
        except SQLAlchemyError as exc:
            return Err(to_engine_error(exc, f'insert {entity.entity_name}'))
        return Ok(entity.model_copy(deep=True))

    async def update(self, entity: E) -> EngineResult[E]:
        prepared = self._row_for(entity)
        if is_err(prepared):
            return prepared
        mapping, values = prepared.ok_value
        key = entity.primary_key
        try:
            async with self._session() as session:
                row = await session.get(
                    mapping.row_cls, key, with_for_update=True, populate_existing=True
                )
                if row is None:
                    return not_found(not_found_message(type(entity), key))
                if entity.versioned:
                    stored_version = getattr(row, 'version')
                    if stored_version != getattr(entity, 'version'):
                        return conflict(
                            f'{entity.entity_name} {key} was modified concurrently '
                            f'(expected version {getattr(entity, "version")}, found {stored_version})'
                        )
                    values['version'] = stored_version + 1
                for column, value in values.items():
                    setattr(row, column, value)
                await session.flush()
        except SQLAlchemyError as exc:
            return Err(to_engine_error(exc, f'update {entity.entity_name}'))
        if entity.versioned:
            return Ok(entity.model_copy(update={'version': values['version']}, deep=True))
        return Ok(entity.model_copy(deep=True))

    async def save(self, entity: E) -> EngineResult[E]:
        prepared = self._row_for(entity)
        if is_err(prepared):
            return prepared
        mapping, values = prepared.ok_value
        row_cls = mapping.row_cls
        pk = row_cls.__mapper__.primary_key[0]
        set_: dict[str, Any] = {k: v for k, v in values.items() if k != pk.key}
        stmt = pg_insert(row_cls).values(**values)
        if entity.versioned:
            set_['version'] = row_cls.__table__.c.version + 1
            stmt = stmt.on_conflict_do_update(index_elements=[pk], set_=set_).returning(
                row_cls.__table__.c.version
            )
        else:
            stmt = stmt.on_conflict_do_update(index_elements=[pk], set_=set_)
        try:
            async with self._session() as session:
                result = await session.execute(stmt)
                new_version = result.scalar_one() if entity.versioned else None
        except SQLAlchemyError as exc:
            return Err(to_engine_error(exc, f'save {entity.entity_name}'))
        if new_version is not None:
            return Ok(entity.model_copy(update={'version': new_version}, deep=True))
        return Ok(entity.model_copy(deep=True))

    async def delete(self, entity_cls: type[Entity], key: Any) -> EngineResult[None]:
        row_cls = self._mapping(entity_cls).row_cls
        pk = row_cls.__mapper__.primary_key[0]
        try:
            async with self._session() as session:
                result = await session.execute(delete(row_cls).where(pk == key))
                deleted = getattr(result, 'rowcount', 0)
        except SQLAlchemyError as exc:
            return Err(to_engine_error(exc, f'delete {entity_cls.entity_name}'))
        if not deleted:
            return not_found(not_found_message(entity_cls, key))
        return Ok(None)

    async def find_by_id(self, entity_cls: type[E], key: Any) -> EngineResult[E]:
        mapping = self._mapping(entity_cls)
        try:
            async with self._session() as session:
                row = await session.get(mapping.row_cls, key, populate_existing=True)
        except SQLAlchemyError as exc:
            return Err(to_engine_error(exc, f'find {entity_cls.entity_name}'))
        if row is None:
            return not_found(not_found_message(entity_cls, key))
        entity = mapping.from_row(row)
        if not isinstance(entity, entity_cls):
            return not_found(not_found_message(entity_cls, key))
        return Ok(entity)

    async def find(
        self,
        entity_cls: type[E],
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> EngineResult[list[E]]:
        mapping = self._mapping(entity_cls)
        row_cls = mapping.row_cls
        filters = dict(filters or {})
        kind_type = entity_cls.__dict__.get('task_type')
        if issubclass(entity_cls, TaskKindRecord) and isinstance(kind_type, TaskType):
            filters.setdefault('task_type', kind_type)

        unknown = sorted(set(filters) - mapping.filterable)
        if order_by is not None and order_by not in mapping.filterable:
            unknown.append(order_by)
        if unknown:
            return illegal_argument(
                f'{entity_cls.entity_name} cannot be queried by: {", ".join(unknown)}'
            )
        if limit is not None and limit < 0:
            return illegal_argument(f'limit must be >= 0, got {limit}')

        stmt = select(row_cls).execution_options(populate_existing=True)
        for field_name, expected in filters.items():
            column = getattr(row_cls, field_name)
            if isinstance(expected, (list, tuple, set, frozenset)):
                stmt = stmt.where(column.in_([_filter_value(v) for v in expected]))
            elif expected is None:
                stmt = stmt.where(column.is_(None))
            else:
                stmt = stmt.where(column == _filter_value(expected))
        if order_by is not None:
            column = getattr(row_cls, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            async with self._session() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            return Err(to_engine_error(exc, f'query {entity_cls.entity_name}'))
        return Ok([mapping.from_row(r) for r in rows])  # type: ignore[misc]

    async def atomic(
        self, fn: Callable[[], Awaitable[EngineResult[T]]]
    ) -> EngineResult[T]:
        active = self._active.get()
        if active is not None:
            return await self._run_savepoint(active, fn)

        async with self.session_factory() as session:
            token = self._active.set(session)
            try:
                result = await fn()
                if is_err(result):
                    await session.rollback()
                    return result
                await session.commit()
                return result
            except SQLAlchemyError as exc:
                await session.rollback()
                return Err(to_engine_error(exc, 'commit unit of work'))
            except BaseException:
                await session.rollback()
                raise
            finally:
                self._active.reset(token)

    async def _run_savepoint(
        self,
        session: AsyncSession,
        fn: Callable[[], Awaitable[EngineResult[T]]],
    ) -> EngineResult[T]:
        try:
            savepoint = await session.begin_nested()
        except SQLAlchemyError as exc:
            return Err(to_engine_error(exc, 'open savepoint'))
        try:
            result = await fn()
        except BaseException:
            await savepoint.rollback()
            raise
        if is_err(result):
            await savepoint.rollback()
        else:
            await savepoint.commit()
        return result
