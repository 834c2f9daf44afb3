# Overview: Transaction and locking helpers shared by the service layer.

from __future__ import annotations

from typing import Callable, TypeVar

from sqlalchemy import event
from sqlalchemy.engine import Engine

from ..extensions import db

T = TypeVar("T")


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


class TransactionManager:
    """
    Runs a unit of work in one database transaction.

    The callable receives the session; a normal return commits, any exception
    rolls back and is re-raised unchanged.
    """

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def with_transaction(self, fn: Callable[..., T]) -> T:
        session = self.session
        try:
            result = fn(session)
            session.commit()
            return result
        except Exception:
            session.rollback()
            raise


def enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let pysqlite honor SAVEPOINT.

    The driver otherwise opens transactions lazily and breaks begin_nested();
    we switch it to autocommit mode and emit BEGIN ourselves.
    """
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")
