# flowcore/core/queue/postgres.py
from __future__ import annotations

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from flowcore.core.defaults import DEFAULT_LEASE_MS
from flowcore.core.logging import get_logger
from flowcore.core.queue.base import check_push_args
from flowcore.core.queue.sql import (
    ALL_READY_SIZES_SQL,
    CLAIM_SQL,
    CONTAINS_SQL,
    DELETE_ITEM_SQL,
    FLUSH_SQL,
    PUSH_IF_NOT_EXISTS_SQL,
    PUSH_SQL,
    READY_SIZE_SQL,
    RECLAIM_EXPIRED_SQL,
)
from flowcore.core.result_types import EngineErrorCode, EngineResult, illegal_argument, not_found
from flowcore.core.types.result import Err, Ok, is_err
from flowcore.core.utils.db import to_engine_error

logger = get_logger('queue')


class PostgresQueue:
    """
    Queue provider backed by the ``flowcore_queue_messages`` table.

    Claims use ``FOR UPDATE SKIP LOCKED`` so concurrent pollers never receive
    the same item while its lease is valid. Tables are created by
    ``PostgresTaskStore.ensure_schema``.
    """

    def __init__(self, engine: AsyncEngine, lease_ms: int = DEFAULT_LEASE_MS):
        self.engine = engine
        self.lease_ms = lease_ms
        self.session_factory = async_sessionmaker(engine, expire_on_commit=False)

    def _error(self, exc: SQLAlchemyError, operation: str) -> Err:
        return Err(to_engine_error(exc, operation, code=EngineErrorCode.QUEUE_ERROR))

    async def push(
        self,
        queue_name: str,
        item_id: str,
        *,
        priority: int = 0,
        delay_seconds: int = 0,
    ) -> EngineResult[None]:
        checked = check_push_args(priority, delay_seconds)
        if is_err(checked):
            return checked
        params = {
            'queue': queue_name,
            'item_id': item_id,
            'priority': priority,
            'delay_seconds': delay_seconds,
        }
        try:
            async with self.session_factory() as session:
                await session.execute(PUSH_SQL, params)
                await session.commit()
        except SQLAlchemyError as exc:
            return self._error(exc, f'push to {queue_name}')
        return Ok(None)

    async def push_if_not_exists(
        self,
        queue_name: str,
        item_id: str,
        *,
        priority: int = 0,
        delay_seconds: int = 0,
    ) -> EngineResult[bool]:
        checked = check_push_args(priority, delay_seconds)
        if is_err(checked):
            return checked
        params = {
            'queue': queue_name,
            'item_id': item_id,
            'priority': priority,
            'delay_seconds': delay_seconds,
        }
        try:
            async with self.session_factory() as session:
                result = await session.execute(PUSH_IF_NOT_EXISTS_SQL, params)
                inserted = result.first() is not None
                await session.commit()
        except SQLAlchemyError as exc:
            return self._error(exc, f'push to {queue_name}')
        return Ok(inserted)

    async def postpone(
        self,
        queue_name: str,
        item_id: str,
        delay_seconds: int,
        *,
        priority: int = 0,
    ) -> EngineResult[None]:
        checked = check_push_args(priority, delay_seconds)
        if is_err(checked):
            return checked
        try:
            async with self.session_factory() as session:
                await session.execute(DELETE_ITEM_SQL, {'queue': queue_name, 'item_id': item_id})
                await session.execute(
                    PUSH_SQL,
                    {
                        'queue': queue_name,
                        'item_id': item_id,
                        'priority': priority,
                        'delay_seconds': delay_seconds,
                    },
                )
                await session.commit()
        except SQLAlchemyError as exc:
            return self._error(exc, f'postpone {item_id} on {queue_name}')
        return Ok(None)

    async def pop(self, queue_name: str) -> EngineResult[str]:
        polled = await self.batch_poll(queue_name, 1)
        if is_err(polled):
            return polled
        if not polled.ok_value:
            return not_found(f'Queue {queue_name} has no ready items')
        return Ok(polled.ok_value[0])

    async def batch_poll(self, queue_name: str, count: int) -> EngineResult[list[str]]:
        if count < 0:
            return illegal_argument(f'batch_poll count must be >= 0, got {count}')
        if count == 0:
            return Ok([])
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    CLAIM_SQL,
                    {
                        'queue': queue_name,
                        'lim': count,
                        'lease_seconds': self.lease_ms / 1000.0,
                    },
                )
                rows = result.fetchall()
                await session.commit()
        except SQLAlchemyError as exc:
            return self._error(exc, f'poll {queue_name}')
        # RETURNING order is unspecified.
        ordered = sorted(rows, key=lambda row: (-row[0], row[1]))
        return Ok([item_id for _, _, item_id in ordered])

    async def get_size(self, queue_name: str) -> EngineResult[int]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(READY_SIZE_SQL, {'queue': queue_name})
                return Ok(int(result.scalar_one()))
        except SQLAlchemyError as exc:
            return self._error(exc, f'size of {queue_name}')

    async def _delete(self, queue_name: str, item_id: str, operation: str) -> EngineResult[bool]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    DELETE_ITEM_SQL, {'queue': queue_name, 'item_id': item_id}
                )
                await session.commit()
                return Ok(getattr(result, 'rowcount', 0) > 0)
        except SQLAlchemyError as exc:
            return self._error(exc, f'{operation} {item_id} on {queue_name}')

    async def ack(self, queue_name: str, item_id: str) -> EngineResult[bool]:
        return await self._delete(queue_name, item_id, 'ack')

    async def remove(self, queue_name: str, item_id: str) -> EngineResult[bool]:
        return await self._delete(queue_name, item_id, 'remove')

    async def contains(self, queue_name: str, item_id: str) -> EngineResult[bool]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    CONTAINS_SQL, {'queue': queue_name, 'item_id': item_id}
                )
                return Ok(bool(result.scalar_one()))
        except SQLAlchemyError as exc:
            return self._error(exc, f'lookup {item_id} on {queue_name}')

    async def reclaim_expired(self) -> EngineResult[int]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(RECLAIM_EXPIRED_SQL)
                await session.commit()
                reclaimed = getattr(result, 'rowcount', 0)
        except SQLAlchemyError as exc:
            return self._error(exc, 'reclaim expired leases')
        if reclaimed:
            logger.info(f'Reclaimed {reclaimed} expired queue lease(s)')
        return Ok(reclaimed)

    async def sizes(self) -> EngineResult[dict[str, int]]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(ALL_READY_SIZES_SQL)
                return Ok({name: int(size) for name, size in result.fetchall()})
        except SQLAlchemyError as exc:
            return self._error(exc, 'queue sizes')

    async def flush(self, queue_name: str) -> EngineResult[int]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(FLUSH_SQL, {'queue': queue_name})
                await session.commit()
                return Ok(getattr(result, 'rowcount', 0))
        except SQLAlchemyError as exc:
            return self._error(exc, f'flush {queue_name}')
