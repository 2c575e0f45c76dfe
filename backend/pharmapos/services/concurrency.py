# Overview: Service-layer operations for concurrency; transaction boundaries and retry.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def begin_immediate() -> None:
    """
    Start the session's write transaction.

    On SQLite this issues BEGIN IMMEDIATE so the database write lock is
    taken up front; a concurrent writer waits on the busy timeout instead
    of failing halfway through a multi-statement unit of work. Other
    dialects rely on row locks and conditional updates, so this is a no-op
    beyond starting the session transaction.
    """
    if db.engine.dialect.name != "sqlite":
        db.session.connection()
        return

    dbapi_conn = db.session.connection().connection.dbapi_connection
    if not dbapi_conn.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). `func` must be a complete unit of work:
    everything it wrote is rolled back before the next attempt.
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
            current_app.logger.warning(
                "Retrying after %s (attempt %d/%d)", type(exc).__name__, attempt + 1, attempts
            )
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
