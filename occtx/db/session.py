from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.sql import ClauseElement

from .lease import Lease, LeaseManager
from .tx import LeasedTransaction


class DbSession:
    """
    Short transactional session over a Lease.

    Acquires a Lease on enter and releases it on exit, committing on success
    and rolling back on exception. Use it for reads that build a snapshot so
    no connection is held while the caller decides what to change.

    Use as:
        with DbSession(manager) as session:
            row = session.fetch_one(...)
    """

    def __init__(self, manager: LeaseManager) -> None:
        self.manager = manager
        self._lease: Lease | None = None
        self._tx: LeasedTransaction | None = None

    def __enter__(self) -> "DbSession":
        if self._lease is not None:
            raise RuntimeError("DbSession is already active; nested sessions are not allowed")
        lease = self.manager.acquire()
        try:
            tx = LeasedTransaction(lease)
            tx.begin()
        except BaseException:
            lease.release()
            raise
        self._lease = lease
        self._tx = tx
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if self._tx is not None and not self._tx.closed:
                if exc_type:
                    self._tx.rollback()
                else:
                    self._tx.commit()
        finally:
            if self._lease is not None:
                self._lease.release()

            self._lease = None
            self._tx = None

        # propagate exceptions (if any)
        return False

    @property
    def active(self) -> bool:
        return self._tx is not None and self._tx.active

    @property
    def dialect_name(self) -> str:
        return self._transaction().dialect_name

    @property
    def supports_returning(self) -> bool:
        return self._transaction().supports_returning

    def _transaction(self) -> LeasedTransaction:
        if self._tx is None:
            raise RuntimeError("DbSession is not active; use within a context manager")
        return self._tx

    def execute(
        self,
        sql: str | ClauseElement,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        """
        Execute a non-SELECT statement and return affected row count.
        """
        return self._transaction().execute(sql, params)

    def execute_control(self, sql: str | ClauseElement) -> None:
        self._transaction().execute_control(sql)

    def execute_insert(
        self,
        sql: str | ClauseElement,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Execute an INSERT and return the new row's identifier.
        """
        return self._transaction().execute_insert(sql, params)

    def execute_scalar(
        self,
        sql: str | ClauseElement,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Execute a statement expected to return a single scalar value.
        """
        return self._transaction().execute_scalar(sql, params)

    def fetch_one(
        self,
        sql: str | ClauseElement,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """
        Execute a SELECT expected to return 0 or 1 row. Raises if more than one row.
        """
        return self._transaction().fetch_one(sql, params)

    def fetch_all(
        self,
        sql: str | ClauseElement,
        params: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Execute a SELECT expected to return multiple rows.
        """
        return self._transaction().fetch_all(sql, params)
