"""Typed error payloads for engine operations.

Result propagation policy
-------------------------
Every store, queue, resolver and service operation returns
``EngineResult[T]`` (``Result[T, EngineError]``). Operational failures never
raise inside the library; only programming errors and
``asyncio.CancelledError`` escape as exceptions.

Where Result stops and exceptions take over:

* **Providers** (``TaskStore``, ``QueueProvider``) -- wrap driver exceptions
  into ``EngineError(DB_ERROR | QUEUE_ERROR)`` with ``retryable`` derived from
  the connection-error classification.

* **Resolver / kind records / service** -- propagate ``Err`` unchanged. There
  is no automatic retry; retry is driven by ``TaskService.retry_task`` and the
  TaskDefinition retry settings.

* **Process boundaries** (CLI, reaper loop) -- log and continue on retryable
  errors, convert fatal startup errors into exceptions.

* **Transport** (out of scope) -- maps codes to status codes via
  ``EngineErrorCode.http_status``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TypeAlias, TypeVar

from flowcore.core.types.result import Err, Result


class EngineErrorCode(str, Enum):
    """Categorized engine operation failure codes."""

    ILLEGAL_ARGUMENT = 'ILLEGAL_ARGUMENT'
    NOT_FOUND = 'NOT_FOUND'
    CONFLICT = 'CONFLICT'
    DB_ERROR = 'DB_ERROR'
    QUEUE_ERROR = 'QUEUE_ERROR'
    NOT_IMPLEMENTED = 'NOT_IMPLEMENTED'

    @property
    def http_status(self) -> int:
        match self:
            case EngineErrorCode.NOT_FOUND:
                return 404
            case EngineErrorCode.ILLEGAL_ARGUMENT:
                return 400
            case EngineErrorCode.CONFLICT:
                return 409
            case _:
                return 500


@dataclass(slots=True, frozen=True)
class EngineError:
    """Error payload carried inside Err(...) for engine operations.

    Fields:
        code: which failure category
        message: human-readable description
        retryable: whether the caller can retry this operation unchanged
        exception: the original cause (if any)
    """

    code: EngineErrorCode
    message: str
    retryable: bool = False
    exception: BaseException | None = None


T = TypeVar('T')

EngineResult: TypeAlias = Result[T, EngineError]


def illegal_argument(message: str) -> Err[EngineError]:
    return Err(EngineError(EngineErrorCode.ILLEGAL_ARGUMENT, message))


def not_found(message: str) -> Err[EngineError]:
    return Err(EngineError(EngineErrorCode.NOT_FOUND, message))


def conflict(message: str) -> Err[EngineError]:
    return Err(EngineError(EngineErrorCode.CONFLICT, message))


def not_implemented(message: str) -> Err[EngineError]:
    return Err(EngineError(EngineErrorCode.NOT_IMPLEMENTED, message))
