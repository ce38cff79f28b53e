# flowcore/core/utils/db.py
"""Helpers for classifying database errors into engine errors."""

from __future__ import annotations

from psycopg import InterfaceError, OperationalError
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError as SAOperationalError

from flowcore.core.result_types import EngineError, EngineErrorCode


def is_dbapi_disconnect(exc: DBAPIError) -> bool:
    """Check whether a SQLAlchemy DBAPIError represents a connection disconnect."""
    connection_invalidated = bool(getattr(exc, 'connection_invalidated', False))
    is_disconnect = bool(getattr(exc, 'is_disconnect', False))
    return connection_invalidated or is_disconnect


def is_retryable_connection_error(exc: BaseException) -> bool:
    """Check whether an exception is a transient connection error worth retrying."""
    match exc:
        case OperationalError() | InterfaceError() | SAOperationalError():
            return True
        case DBAPIError() as db_exc if is_dbapi_disconnect(db_exc):
            return True
        case _:
            return False


def to_engine_error(
    exc: BaseException,
    operation: str,
    code: EngineErrorCode = EngineErrorCode.DB_ERROR,
) -> EngineError:
    """Wrap a driver exception raised during ``operation``.

    Unique-key violations surface as CONFLICT so callers can tell a duplicate
    insert apart from an unavailable database.
    """
    if isinstance(exc, IntegrityError):
        return EngineError(
            code=EngineErrorCode.CONFLICT,
            message=f'{operation} conflicts with an existing row: {exc.orig}',
            retryable=False,
            exception=exc,
        )
    return EngineError(
        code=code,
        message=f'{operation} failed: {exc}',
        retryable=is_retryable_connection_error(exc),
        exception=exc,
    )
