# Overview: Transaction helpers shared by every multi-step mutation (locking, write transactions, retry).

from __future__ import annotations

import logging
import time

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Add FOR UPDATE to a sale/product read.

    PostgreSQL and MySQL honor it. SQLite drops it silently and relies on
    begin_write() for the same guarantee.
    """
    return query.with_for_update()


def begin_write():
    """
    Take the SQLite write lock before the first read of a mutation.

    Two refunds for the same sale must not both read the same remaining
    amount. SQLite defers its lock to the first write, so issue BEGIN
    IMMEDIATE here. No-op on other dialects or inside an open transaction.
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.dbapi_connection
    if not raw.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Run one sale/refund/stock mutation, retrying lock and version conflicts.

    OperationalError ("database is locked") and StaleDataError (a Sale or
    Product version_id moved underneath us) are retried with exponential
    backoff. Business errors roll back and propagate on the first attempt.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            logger.warning("Retrying after concurrency conflict (attempt %s): %s", attempt + 1, exc)
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
