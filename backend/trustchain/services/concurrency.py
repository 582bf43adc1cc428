# Overview: Store-level concurrency primitives shared by the workflow services.

from __future__ import annotations

import time

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Correctness never depends on this lock alone: transitions are guarded by
    compare_and_set and dependent inserts by unique indexes.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Any other exception rolls the session
    back and propagates, so a failed multi-row transition leaves the prior
    committed state untouched.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc


def violates_constraint(exc: IntegrityError, *markers: str) -> bool:
    """
    True when an IntegrityError names one of the given constraints.

    Backends report differently: PostgreSQL names the constraint or index,
    SQLite names the columns ("UNIQUE constraint failed: orders.tracking_id").
    Pass both forms.
    """
    message = str(getattr(exc, "orig", exc))
    return any(marker in message for marker in markers)


def compare_and_set(model, row_id, *, expected: dict, values: dict) -> bool:
    """
    Conditionally update one row: set `values` only where the row's current
    columns equal `expected`.

    Returns True when exactly one row matched. The check and the write are a
    single UPDATE statement, so two concurrent callers expecting the same
    state cannot both win.

    Expected values may be a tuple/list/set, meaning "column IN (...)".
    """
    conditions = [model.id == row_id]
    for column_name, expected_value in expected.items():
        column = getattr(model, column_name)
        if isinstance(expected_value, (tuple, list, set, frozenset)):
            conditions.append(column.in_(list(expected_value)))
        elif expected_value is None:
            conditions.append(column.is_(None))
        else:
            conditions.append(column == expected_value)

    stmt = (
        update(model)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    return result.rowcount == 1


def atomic_increment(model, row_id, column_name: str, amount: int = 1) -> bool:
    """
    Increment a counter column with a single `col = col + n` UPDATE.

    Never read-modify-write in Python: concurrent completions would lose
    updates. Returns True when the row exists.
    """
    column = getattr(model, column_name)
    stmt = (
        update(model)
        .where(model.id == row_id)
        .values({column_name: column + amount})
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    return result.rowcount == 1
