# Overview: Row locking and retry helpers for multi-statement storefront operations.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for check-then-write sequences
    (stock decrement, payment reconciliation, refunds).

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a unit of work with retry on concurrency-related failures.

    func must be safe to re-run from scratch: it is expected to do all its
    reads and writes and commit once at the end. The session is rolled back
    before each retry so no half-applied state leaks into the next attempt.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (version_id conflicts on orders, payments and inventory).
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError):
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))


def run_atomic(func, *, attempts: int = 3):
    """
    run_with_retry, plus a rollback when func raises a domain error after it
    has already flushed writes (e.g. stock ran out halfway through a
    confirmation). The error is re-raised unchanged.
    """
    try:
        return run_with_retry(func, attempts=attempts)
    except Exception:
        db.session.rollback()
        raise
