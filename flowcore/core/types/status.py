# core/types/status.py
"""
Core enums used throughout the engine.
This module should not import from other application modules.
"""

from enum import Enum


class TaskStatus(Enum):
    """TaskModel execution status"""

    SCHEDULED = 'SCHEDULED'  # Created and waiting for a poller (or a gate to open).

    IN_PROGRESS = 'IN_PROGRESS'  # Claimed by a poller, or a gate waiting on others.

    COMPLETED = 'COMPLETED'
    COMPLETED_WITH_ERRORS = 'COMPLETED_WITH_ERRORS'
    FAILED = 'FAILED'  # Retriable failure.
    FAILED_WITH_TERMINAL_ERROR = 'FAILED_WITH_TERMINAL_ERROR'  # Never retried.
    TIMED_OUT = 'TIMED_OUT'
    CANCELED = 'CANCELED'
    SKIPPED = 'SKIPPED'

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state (no further transitions)."""
        return self in TASK_TERMINAL_STATES

    @property
    def is_successful(self) -> bool:
        return self in TASK_SUCCESSFUL_STATES

    @property
    def is_retriable(self) -> bool:
        """Whether a task in this status may re-enter SCHEDULED via retry."""
        return self in TASK_RETRIABLE_STATES


TASK_TERMINAL_STATES: frozenset[TaskStatus] = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.COMPLETED_WITH_ERRORS,
    TaskStatus.FAILED,
    TaskStatus.FAILED_WITH_TERMINAL_ERROR,
    TaskStatus.TIMED_OUT,
    TaskStatus.CANCELED,
    TaskStatus.SKIPPED,
})

TASK_SUCCESSFUL_STATES: frozenset[TaskStatus] = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.COMPLETED_WITH_ERRORS,
    TaskStatus.SKIPPED,
})

TASK_RETRIABLE_STATES: frozenset[TaskStatus] = frozenset({
    TaskStatus.FAILED,
    TaskStatus.TIMED_OUT,
    TaskStatus.CANCELED,
})


class TaskType(Enum):
    """Closed set of task kinds a TaskConfig can describe.

    The value doubles as the name of the queue the kind is dispatched on.
    """

    SIMPLE = 'SIMPLE'
    DYNAMIC = 'DYNAMIC'
    FORK_JOIN = 'FORK_JOIN'
    FORK_JOIN_DYNAMIC = 'FORK_JOIN_DYNAMIC'
    SWITCH = 'SWITCH'
    JOIN = 'JOIN'
    DO_WHILE = 'DO_WHILE'
    SUB_WORKFLOW = 'SUB_WORKFLOW'
    START_WORKFLOW = 'START_WORKFLOW'
    EVENT = 'EVENT'
    WAIT = 'WAIT'
    HUMAN = 'HUMAN'
    USER_DEFINED = 'USER_DEFINED'
    HTTP = 'HTTP'
    INLINE = 'INLINE'
    EXCLUSIVE_JOIN = 'EXCLUSIVE_JOIN'
    TERMINATE_TASK = 'TERMINATE_TASK'
    TERMINATE_WORKFLOW = 'TERMINATE_WORKFLOW'
    KAFKA_PUBLISH = 'KAFKA_PUBLISH'
    JSON_JQ_TRANSFORM = 'JSON_JQ_TRANSFORM'
    SET_VARIABLE = 'SET_VARIABLE'
    UPDATE_TASK = 'UPDATE_TASK'
    WAIT_FOR_WEBHOOK = 'WAIT_FOR_WEBHOOK'
    BUSINESS_RULE = 'BUSINESS_RULE'
    GET_SIGNED_JWT = 'GET_SIGNED_JWT'
    UPDATE_SECRET = 'UPDATE_SECRET'
    SQL_TASK = 'SQL_TASK'

    @classmethod
    def parse(cls, value: str) -> 'TaskType | None':
        """Case-insensitive lookup by value; returns None for unknown names."""
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


# Kinds the resolver refuses before any side effect.
UNIMPLEMENTED_TASK_TYPES: frozenset[TaskType] = frozenset({
    TaskType.HUMAN,
    TaskType.USER_DEFINED,
    TaskType.KAFKA_PUBLISH,
    TaskType.EXCLUSIVE_JOIN,
})


class ForkType(Enum):
    """Fan-out mode of a FORK_JOIN_DYNAMIC task."""

    DIFFERENT_TASK = 'DIFFERENT_TASK'
    SAME_TASK = 'SAME_TASK'
    SAME_TASK_SUB_WORKFLOW = 'SAME_TASK_SUB_WORKFLOW'


class TaskTerminationStatus(Enum):
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'
    TERMINATED = 'TERMINATED'


class TimeoutPolicy(Enum):
    RETRY = 'RETRY'
    TIME_OUT_WF = 'TIME_OUT_WF'
    ALERT_ONLY = 'ALERT_ONLY'


class RetryLogic(Enum):
    FIXED = 'FIXED'
    EXPONENTIAL_BACKOFF = 'EXPONENTIAL_BACKOFF'
    LINEAR_BACKOFF = 'LINEAR_BACKOFF'


# Legal status moves outside of retry. Terminal statuses only leave through
# TaskService.retry_task.
_ACTIVE_TARGETS: frozenset[TaskStatus] = TASK_TERMINAL_STATES | {TaskStatus.IN_PROGRESS}

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.SCHEDULED: _ACTIVE_TARGETS | {TaskStatus.SCHEDULED},
    TaskStatus.IN_PROGRESS: _ACTIVE_TARGETS,
    **{status: frozenset() for status in TASK_TERMINAL_STATES},
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Whether a task in ``current`` may be moved to ``target`` by an update."""
    return target in TASK_TRANSITIONS[current]
