# durq/core/utils/db.py
"""Helpers for classifying database errors and quoting identifiers."""

from __future__ import annotations

import re

from psycopg import InterfaceError, OperationalError
from sqlalchemy.exc import (
    DBAPIError,
    OperationalError as SAOperationalError,
    TimeoutError as SAPoolTimeoutError,
)

# Lowercase SQL identifier; PostgreSQL truncates names beyond 63 bytes.
_IDENTIFIER_RE = re.compile(r'^[a-z_][a-z0-9_]{0,62}$')


def is_dbapi_disconnect(exc: DBAPIError) -> bool:
    """Check whether a SQLAlchemy DBAPIError represents a connection disconnect."""
    connection_invalidated = bool(getattr(exc, 'connection_invalidated', False))
    is_disconnect = bool(getattr(exc, 'is_disconnect', False))
    return connection_invalidated or is_disconnect


def is_retryable_connection_error(exc: BaseException) -> bool:
    """Check whether an exception is a transient database error worth retrying.

    psycopg reports serialization failures, statement timeouts and lock
    timeouts as OperationalError subclasses, so they land in the first branch.
    """
    match exc:
        case OperationalError() | InterfaceError() | SAOperationalError():
            return True
        case SAPoolTimeoutError():
            return True
        case DBAPIError() as db_exc if is_dbapi_disconnect(db_exc):
            return True
        case _:
            return False


def is_valid_identifier(name: str) -> bool:
    """Whether name is safe to interpolate into SQL as a table name."""
    return bool(_IDENTIFIER_RE.match(name))


def quote_identifier(name: str) -> str:
    """Double-quote a validated identifier for interpolation into SQL text."""
    if not is_valid_identifier(name):
        raise ValueError(f'invalid SQL identifier: {name!r}')
    return f'"{name}"'
