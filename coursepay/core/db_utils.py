"""Database utilities: transient-failure retry and dialect-aware upserts.

Managed PostgreSQL can drop connections unexpectedly (idle timeouts, scale
down, failover). Store writes are retried a bounded number of times when the
failure looks like a dropped connection.

All entitlement state is written with INSERT ... ON CONFLICT DO UPDATE keyed
on natural identity; the database's conflict handling is the only
synchronization between concurrent requests.
"""

import functools
import time
from typing import TypeVar, Callable, Any, Iterable, Mapping, Optional, ParamSpec

import structlog
from sqlmodel import Session, SQLModel
from sqlalchemy.exc import (
    OperationalError,
    DisconnectionError,
    InterfaceError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")
P = ParamSpec("P")

# Errors that indicate a transient connection failure (worth retrying)
TRANSIENT_ERRORS = (
    "server closed the connection unexpectedly",
    "connection refused",
    "connection reset by peer",
    "ssl connection has been closed unexpectedly",
    "terminating connection due to administrator command",
    "connection timed out",
    "could not connect to server",
    "the database system is starting up",
    "the database system is shutting down",
    "database is locked",
)


def is_transient_error(error: Exception) -> bool:
    """Check if an error is a transient connection failure."""
    error_msg = str(error).lower()
    return any(msg in error_msg for msg in TRANSIENT_ERRORS)


def db_retry(
    max_retries: int = 2,
    base_delay: float = 0.2,
    max_delay: float = 2.0,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator that retries a database operation on transient connection failures.

    The wrapped callable must leave the session usable on failure (roll back
    before re-raising).

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries (seconds), doubled per attempt
        max_delay: Maximum delay between retries (seconds)
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        func_name = getattr(func, "__name__", "unknown")

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)  # type: ignore[arg-type]
                except (OperationalError, DisconnectionError, InterfaceError) as e:
                    if not is_transient_error(e) or attempt >= max_retries:
                        raise

                    delay = min(base_delay * 2**attempt, max_delay)
                    logger.warning(
                        "Transient database error, retrying",
                        operation=func_name,
                        attempt=attempt + 1,
                        max_attempts=max_retries + 1,
                        delay_seconds=delay,
                        error=str(e),
                    )
                    time.sleep(delay)

            raise RuntimeError("Unexpected state in db_retry")

        return wrapper  # type: ignore[return-value]

    return decorator


def _dialect_insert(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert is not supported on {dialect}")
    return insert


def upsert(
    session: Session,
    model: type[SQLModel],
    values: Mapping[str, Any],
    conflict_columns: Iterable[str],
    *,
    keep_on_conflict: Iterable[str] = (),
    set_on_conflict: Optional[Callable[[Any, Any], Mapping[str, Any]]] = None,
    where: Optional[Callable[[Any, Any], Any]] = None,
) -> int:
    """
    INSERT ``values`` into the model's table, updating on key conflict.

    On conflict every supplied non-key column is replaced by the incoming
    value, except columns in ``keep_on_conflict``.
    ``set_on_conflict(table, excluded)`` returns explicit SQL expressions
    (counters, COALESCE) that take precedence. ``where(table, excluded)``
    makes the update conditional. With nothing to update the row is left
    untouched.

    Returns the number of rows inserted or updated (0 when the conditional
    update was skipped). Does not commit.
    """
    insert = _dialect_insert(session)
    table = model.__table__  # type: ignore[attr-defined]
    conflict_columns = list(conflict_columns)
    keep = set(keep_on_conflict) | set(conflict_columns)

    stmt = insert(table).values(**values)
    set_ = {name: stmt.excluded[name] for name in values if name not in keep}
    if set_on_conflict is not None:
        set_.update(set_on_conflict(table, stmt.excluded))

    if set_:
        stmt = stmt.on_conflict_do_update(
            index_elements=conflict_columns,
            set_=set_,
            where=where(table, stmt.excluded) if where is not None else None,
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)

    result = session.execute(stmt)
    return result.rowcount
