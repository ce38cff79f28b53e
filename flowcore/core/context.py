# flowcore/core/context.py
from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from flowcore.core.logging import get_logger
from flowcore.core.models.config import EngineConfig
from flowcore.core.queue.base import QueueProvider
from flowcore.core.queue.memory import InMemoryQueue
from flowcore.core.queue.postgres import PostgresQueue
from flowcore.core.result_types import EngineResult
from flowcore.core.storage.base import TaskStore
from flowcore.core.storage.memory import InMemoryTaskStore
from flowcore.core.storage.postgres import PostgresTaskStore
from flowcore.core.types.result import Ok
from flowcore.core.utils.url import mask_database_url

logger = get_logger('context')


class ExecutionContext:
    """
    Dependency bundle handed to every engine operation.

    Holds the persistence provider and the queue provider; owns no task
    state. Whoever constructs a context owns its lifecycle and must ``close``
    it. Contexts are never global: build one per poller/process and pass it
    by reference.
    """

    def __init__(
        self,
        store: TaskStore,
        queue: QueueProvider,
        config: Optional[EngineConfig] = None,
        *,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.config = config or EngineConfig()
        self._engine = engine

    @classmethod
    def in_memory(cls, config: Optional[EngineConfig] = None) -> ExecutionContext:
        config = config or EngineConfig()
        return cls(
            InMemoryTaskStore(),
            InMemoryQueue(lease_ms=config.queue.lease_ms),
            config,
        )

    @classmethod
    def from_config(cls, config: EngineConfig) -> ExecutionContext:
        """PostgreSQL providers when ``config.postgres`` is set, in-memory otherwise."""
        if config.postgres is None:
            logger.info('Using in-memory store and queue')
            return cls.in_memory(config)

        pg = config.postgres
        engine_cfg = pg.model_dump(exclude={'database_url'}, exclude_none=True)
        engine = create_async_engine(pg.database_url, **engine_cfg)
        logger.info(f'Using PostgreSQL store and queue at {mask_database_url(pg.database_url)}')
        return cls(
            PostgresTaskStore(engine),
            PostgresQueue(engine, lease_ms=config.queue.lease_ms),
            config,
            engine=engine,
        )

    async def ensure_schema(self) -> EngineResult[None]:
        """Create tables when the store is PostgreSQL; no-op otherwise."""
        if isinstance(self.store, PostgresTaskStore):
            return await self.store.ensure_schema()
        return Ok(None)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
