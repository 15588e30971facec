# Overview: Transaction boundaries and storage error translation for every write path.

from __future__ import annotations

import time
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from ..extensions import db
from ..errors import StorageBusy, StorageError

_LOCK_MESSAGES = ("database is locked", "database table is locked", "database is busy")


def _driver_message(exc: SQLAlchemyError) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else str(exc)


def translate_storage_error(exc: SQLAlchemyError) -> StorageError:
    """
    Map a SQLAlchemy error onto the core's storage error kinds.

    Lock timeouts become StorageBusy; anything else is surfaced verbatim as
    StorageError.
    """
    message = _driver_message(exc)
    if isinstance(exc, OperationalError) and any(m in message.lower() for m in _LOCK_MESSAGES):
        return StorageBusy(f"Storage busy: {message}")
    return StorageError(message)


@contextmanager
def atomic():
    """
    Run a unit of work in one database transaction.

    Commits when the block exits normally. Any exception rolls back every
    statement issued in the block, DDL included, and propagates; SQLAlchemy
    errors are translated first.

    Usage:
        with atomic() as session:
            session.execute(...)
            append_event(...)
    """
    session = db.session
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise translate_storage_error(exc) from exc
    except BaseException:
        session.rollback()
        raise


@contextmanager
def storage_errors():
    """Translate SQLAlchemy errors raised by read paths."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise translate_storage_error(exc) from exc


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute an operation, retrying when storage is busy.

    Retries only on StorageBusy; validation and permission errors are
    raised immediately.
    """
    for attempt in range(attempts):
        try:
            return func()
        except StorageBusy:
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
