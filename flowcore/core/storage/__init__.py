from flowcore.core.storage.base import TaskStore
from flowcore.core.storage.memory import InMemoryTaskStore
from flowcore.core.storage.postgres import PostgresTaskStore

__all__ = [
    'TaskStore',
    'InMemoryTaskStore',
    'PostgresTaskStore',
]
