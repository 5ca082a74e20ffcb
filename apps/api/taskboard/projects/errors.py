from __future__ import annotations

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError


_CONFLICT_SQLSTATES = {"40001", "40P01"}
_TIMEOUT_SQLSTATES = {"57014", "55P03"}
_TIMEOUT_MARKERS = ("statement timeout", "canceling statement", "timed out", "timeout expired", "database is locked")


class OrderingError(Exception):
    """Base class for failures reported by the position reindexer."""

    code = "ordering_error"


class NotFoundError(OrderingError):
    code = "not_found"

    def __init__(self, kind: str, identifier: object) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class InvalidOrderingError(OrderingError):
    code = "invalid_input"


class ConcurrentModificationError(OrderingError):
    code = "concurrent_modification"


class PersistenceTimeoutError(OrderingError):
    code = "persistence_timeout"


def _sqlstate(exc: DBAPIError) -> str | None:
    original = exc.orig
    if original is None:
        return None
    # psycopg 3 exposes ``sqlstate``, psycopg2 ``pgcode``.
    for attribute in ("sqlstate", "pgcode"):
        value = getattr(original, attribute, None)
        if isinstance(value, str) and value:
            return value
    return None


def translate_persistence_error(exc: SQLAlchemyError) -> OrderingError | None:
    """Map a database failure to the ordering taxonomy, or None when it has no counterpart."""
    if isinstance(exc, StaleDataError):
        return ConcurrentModificationError(f"container was modified concurrently: {exc}")

    if not isinstance(exc, DBAPIError):
        return None

    sqlstate = _sqlstate(exc)
    if sqlstate in _CONFLICT_SQLSTATES:
        return ConcurrentModificationError(f"concurrent position rewrite rejected (sqlstate {sqlstate})")
    if sqlstate in _TIMEOUT_SQLSTATES:
        return PersistenceTimeoutError(f"position rewrite timed out (sqlstate {sqlstate})")

    message = str(exc.orig if exc.orig is not None else exc).lower()
    if any(marker in message for marker in _TIMEOUT_MARKERS):
        return PersistenceTimeoutError(f"position rewrite timed out: {message[:200]}")
    return None
