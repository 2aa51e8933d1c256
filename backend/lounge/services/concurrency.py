# Overview: Service-layer operations for concurrency; transaction boundaries, row locks and retries.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrentConflict, StoreUnavailable
from ..extensions import db


RETRYABLE = (OperationalError, StaleDataError, IntegrityError, ConcurrentConflict)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() covers it there.
    """
    return query.with_for_update()


def begin_write() -> None:
    """
    Open the write transaction up front.

    On SQLite, BEGIN IMMEDIATE takes the database write lock before the first
    read, so concurrent read-modify-write sequences queue on the busy timeout
    instead of racing. Other backends rely on lock_for_update().
    """
    if db.engine.dialect.name == "sqlite":
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks), StaleDataError
    (optimistic locking conflicts), IntegrityError (a concurrent writer took
    a unique key first) and ConcurrentConflict. When attempts run out the
    failure surfaces as StoreUnavailable; the operation is then guaranteed
    not to have been applied.

    Any other exception rolls the session back and propagates unchanged.
    """
    if attempts is None:
        attempts = current_app.config.get("MUTATION_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("MUTATION_RETRY_BACKOFF", 0.05)

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE as exc:
            db.session.rollback()
            last_exc = exc
            current_app.logger.debug(
                "Retrying after %s (attempt %d/%d)", type(exc).__name__, attempt + 1, attempts
            )
            if attempt < attempts - 1:
                time.sleep(backoff_base * (2 ** attempt))
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StoreUnavailable("Inventory store unavailable") from exc
        except Exception:
            db.session.rollback()
            raise

    raise StoreUnavailable(
        "Inventory store busy; operation was not applied",
        {"attempts": attempts, "cause": type(last_exc).__name__},
    ) from last_exc
