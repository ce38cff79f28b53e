from flowcore.core.queue.base import QueueProvider
from flowcore.core.queue.memory import InMemoryQueue
from flowcore.core.queue.postgres import PostgresQueue

__all__ = [
    'QueueProvider',
    'InMemoryQueue',
    'PostgresQueue',
]
