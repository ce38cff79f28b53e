"""Flowcore - task-type resolution, queueing and lifecycle tracking for workflow engines"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.context import ExecutionContext
from .core.models.config import EngineConfig, PostgresConfig, QueueConfig, ReaperConfig
from .core.models.definition import TaskDefinition
from .core.models.logs import PollData, TaskExecutionLog
from .core.models.task_config import CacheConfig, SubWorkflowParams, TaskConfig
from .core.models.task_model import TaskModel, TaskUpdate
from .core.result_types import EngineError, EngineErrorCode, EngineResult
from .core.types.status import (
    ForkType,
    TaskStatus,
    TaskTerminationStatus,
    TaskType,
    TASK_TERMINAL_STATES,
)
from .core.tasks import TaskKindRecord, resolve, schedule, to_task
from .core.service import TaskService
from .core.reaper import Reaper, ReaperReport
from .core.errors import (
    ConfigurationError,
    ErrorCode,
    FlowcoreError,
    TaskConfigError,
)

__all__ = [
    # Context and config
    'ExecutionContext',
    'EngineConfig',
    'PostgresConfig',
    'QueueConfig',
    'ReaperConfig',
    # Entities
    'TaskDefinition',
    'TaskConfig',
    'SubWorkflowParams',
    'CacheConfig',
    'TaskModel',
    'TaskUpdate',
    'TaskExecutionLog',
    'PollData',
    'TaskKindRecord',
    # Enums
    'TaskStatus',
    'TaskType',
    'ForkType',
    'TaskTerminationStatus',
    'TASK_TERMINAL_STATES',
    # Operations
    'to_task',
    'resolve',
    'schedule',
    'TaskService',
    'Reaper',
    'ReaperReport',
    # Results and errors
    'EngineError',
    'EngineErrorCode',
    'EngineResult',
    'FlowcoreError',
    'ConfigurationError',
    'TaskConfigError',
    'ErrorCode',
]
