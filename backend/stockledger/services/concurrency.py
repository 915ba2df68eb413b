# Overview: Transaction helpers shared by every mutating service: locking, SQLite write serialization, retry.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ContentionError, LedgerError
from ..extensions import db
from .permission_service import log_security_event


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write_transaction()
    serializes writers there instead. Other DBs honor it.
    """
    return query.with_for_update()


def begin_write_transaction() -> None:
    """
    Open the current transaction as a write transaction.

    On SQLite this issues BEGIN IMMEDIATE so the database write lock is taken
    before any quantity is read; a second writer waits (bounded by the
    connection timeout) instead of reading stale stock. No-op elsewhere.
    """
    if db.session.get_bind().dialect.name != "sqlite":
        return
    conn = db.session.connection()
    raw = conn.connection.driver_connection
    if not raw.in_transaction:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (lock timeouts, deadlocks) and StaleDataError
    (optimistic locking conflicts); exhausting the attempts raises
    ContentionError. Any other exception rolls the session back and
    propagates unchanged, so a failed operation never leaves partial state.
    """
    if attempts is None:
        attempts = current_app.config.get("RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("RETRY_BACKOFF_SECONDS", 0.1)

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt < attempts - 1:
                time.sleep(backoff_base * (2 ** attempt))
        except LedgerError as exc:
            db.session.rollback()
            if exc.security_event_type:
                log_security_event(exc)
            raise
        except Exception:
            db.session.rollback()
            raise

    current_app.logger.warning(
        "Contention retries exhausted after %s attempts: %s", attempts, last_exc
    )
    raise ContentionError(
        "Concurrent update conflict; retry the operation",
        {"attempts": attempts, "cause": type(last_exc).__name__},
    ) from last_exc
