# Overview: Locking and retry helpers shared by the budget ledger and escalation services.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import DiscountAuthorityError, PersistenceFailure
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Correctness on SQLite comes from the optimistic version column and the
    guarded UPDATE statements instead.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
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
    if last_exc:
        raise last_exc


def run_fail_closed(func, *, operation: str):
    """
    Run a ledger/escalation transaction with bounded retries; fail closed.

    - Business errors (DiscountAuthorityError) roll back and propagate as-is,
      without retry.
    - Storage errors that survive the retries roll back and surface as
      PersistenceFailure, so no discount is ever applied on an unknown state.
    """
    attempts = current_app.config.get("LEDGER_RETRY_ATTEMPTS", 3)
    try:
        return run_with_retry(func, attempts=attempts)
    except DiscountAuthorityError:
        db.session.rollback()
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("Ledger operation %s failed after %s attempts: %s", operation, attempts, exc)
        raise PersistenceFailure(
            f"{operation} could not be completed; storage unavailable",
            details={"operation": operation},
        ) from exc
