# Overview: Locking, retry and savepoint helpers shared by the ledger, sale and return services.

from __future__ import annotations

import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_immediate() provides
    the equivalent (database-wide) writer serialization there.
    """
    return query.with_for_update()


def begin_immediate() -> None:
    """
    Take the SQLite write lock before the first read of a check-then-write
    sequence, so a concurrent writer cannot slip in between the check and
    the write. No-op on databases that honor FOR UPDATE.
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, lock timeouts) and StaleDataError
    (optimistic locking conflicts). Any other exception rolls the session
    back and propagates unchanged.
    """
    if attempts is None:
        attempts = current_app.config.get("DB_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("DB_RETRY_BACKOFF", 0.1)

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Retrying after concurrency failure (attempt %s/%s): %s",
                attempt + 1, attempts, exc,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc


@contextmanager
def best_effort(what: str, **context):
    """
    Run a block inside a SAVEPOINT; on failure roll back only the savepoint
    and log. The enclosing transaction continues untouched.
    """
    try:
        with db.session.begin_nested():
            yield
    except SQLAlchemyError as exc:
        current_app.logger.warning("Best-effort %s failed (%s): %s", what, context, exc)
