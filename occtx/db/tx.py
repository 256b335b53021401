from __future__ import annotations

import logging
import time
from typing import Any, Mapping, Protocol

from sqlalchemy import text
from sqlalchemy.engine import Connection, CursorResult
from sqlalchemy.sql import ClauseElement

from .helpers import describe_statement
from .lease import SQLITE_BEGIN_OPTION, Lease
from .metrics import observe_db_write

logger = logging.getLogger(__name__)


class DbTx(Protocol):
    """
    Protocol for anything that runs statements inside an open transaction.

    Implemented by DbSession and LeasedTransaction; consumed by RowLock.
    """

    @property
    def active(self) -> bool:
        """True while statements may be executed."""
        ...

    @property
    def dialect_name(self) -> str:
        """Name of the SQLAlchemy dialect ("postgresql", "mysql", "sqlite", ...)."""
        ...

    def execute(
        self,
        sql: str | ClauseElement,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        """Execute a non-SELECT statement and return affected row count."""
        ...

    def execute_control(self, sql: str | ClauseElement) -> None:
        """Execute a statement that returns no rows and has no meaningful rowcount."""
        ...

    def fetch_one(
        self,
        sql: str | ClauseElement,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Execute a SELECT expected to return 0 or 1 row."""
        ...


class LeasedTransaction:
    """
    Transaction on a leased connection with explicit begin/commit/rollback.

    The transaction does not own the connection: commit() and rollback()
    end the transaction but leave the connection with its Lease, which the
    caller releases.

    ⚠️ IMPORTANT: Do NOT perform retry loops inside a single LeasedTransaction.
    Each attempt must begin a new transaction with a freshly read snapshot.

    Usage:
        with manager.lease() as lease:
            tx = LeasedTransaction(lease)
            tx.begin()
            try:
                tx.execute(stmt, params)
                tx.commit()
            except Exception:
                tx.rollback()
                raise
    """

    def __init__(self, lease: Lease) -> None:
        self.lease = lease
        self._tx = None
        self._closed = False
        # Track write operations for metrics
        self._write_operations: list[dict[str, Any]] = []

    @property
    def active(self) -> bool:
        return self._tx is not None and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dialect_name(self) -> str:
        return self.lease.connection.dialect.name

    @property
    def supports_returning(self) -> bool:
        """True if INSERT ... RETURNING is available on this dialect."""
        return self.lease.connection.dialect.insert_returning

    def begin(self, write_lock: bool = False) -> None:
        """
        Begin the transaction on the leased connection.

        Args:
            write_lock: Take the database write lock at BEGIN (BEGIN IMMEDIATE)
                on SQLite, which has no row locks. Ignored on other dialects.

        Raises:
            RuntimeError: If the transaction was already begun or is closed
        """
        if self._closed:
            raise RuntimeError("Transaction is already closed")
        if self._tx is not None:
            raise RuntimeError("Transaction has already begun")

        conn = self.lease.connection
        if not (write_lock and conn.dialect.name == "sqlite"):
            self._tx = conn.begin()
            return

        conn.execution_options(**{SQLITE_BEGIN_OPTION: "IMMEDIATE"})
        try:
            self._tx = conn.begin()
        finally:
            conn.execution_options(**{SQLITE_BEGIN_OPTION: "DEFERRED"})

    def _connection(self) -> Connection:
        if self._closed or self._tx is None:
            raise RuntimeError("Transaction is not active")
        return self.lease.connection

    def commit(self) -> None:
        """
        Commit the transaction.

        On commit failure a best-effort rollback is attempted before the
        original exception is re-raised.

        Raises:
            RuntimeError: If transaction is already closed
        """
        if self._closed:
            raise RuntimeError("Transaction is already closed")

        status = "success"
        try:
            if self._tx is not None:
                self._tx.commit()
        except Exception:
            status = "error"
            try:
                if self._tx is not None:
                    self._tx.rollback()
            except Exception:
                logger.warning(
                    "Rollback after failed commit also failed on lease %s",
                    self.lease.id,
                    exc_info=True,
                )
            raise
        finally:
            self._finish(status)

    def rollback(self) -> None:
        """
        Roll back the transaction.

        Raises:
            RuntimeError: If transaction is already closed
        """
        if self._closed:
            raise RuntimeError("Transaction is already closed")

        try:
            if self._tx is not None:
                self._tx.rollback()
        finally:
            self._finish("error")

    def _finish(self, status: str) -> None:
        self._closed = True
        self._tx = None
        end_time = time.monotonic()

        # Metrics must not mask real errors
        try:
            for op in self._write_operations:
                observe_db_write(
                    table=op["table"],
                    op_type=op["op_type"],
                    status=status,
                    latency_s=end_time - op["start_time"],
                )
        except Exception:
            logger.debug("Failed to record write metrics", exc_info=True)

    def _run(self, sql: str | ClauseElement, params: Mapping[str, Any] | None) -> CursorResult:
        conn = self._connection()
        stmt = text(sql) if isinstance(sql, str) else sql
        start_time = time.monotonic()
        result = conn.execute(stmt, dict(params or {}))

        table_name, op_type = describe_statement(stmt)
        if op_type in ("insert", "update"):
            self._write_operations.append({
                "start_time": start_time,
                "table": table_name,
                "op_type": op_type,
            })
        return result

    def execute(
        self,
        sql: str | ClauseElement,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        """
        Execute a non-SELECT statement and return affected row count.

        Raises:
            RuntimeError: If transaction is not active or rowcount is None
        """
        result = self._run(sql, params)
        try:
            if result.rowcount is None:
                raise RuntimeError(
                    "execute() received None rowcount for statement. "
                    "This may indicate a DDL statement or unsupported operation type."
                )
            return int(result.rowcount)
        finally:
            result.close()

    def execute_control(self, sql: str | ClauseElement) -> None:
        """
        Execute a control statement (e.g. SET LOCAL lock_timeout).
        """
        self._run(sql, None).close()

    def execute_insert(
        self,
        sql: str | ClauseElement,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Execute an INSERT and return the new row's identifier.

        Statements with a RETURNING clause yield the returned scalar;
        otherwise the driver's lastrowid is used.
        """
        result = self._run(sql, params)
        try:
            if result.returns_rows:
                return result.scalar_one()
            return result.lastrowid
        finally:
            result.close()

    def execute_scalar(
        self,
        sql: str | ClauseElement,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Execute a statement expected to return a single scalar value.
        """
        result = self._run(sql, params)
        try:
            return result.scalar_one_or_none()
        finally:
            result.close()

    def fetch_one(
        self,
        sql: str | ClauseElement,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """
        Execute a SELECT expected to return 0 or 1 row. Raises if more than one row.
        """
        result = self._run(sql, params)
        try:
            row = result.mappings().one_or_none()
            if row is None:
                return None
            return dict(row)
        finally:
            result.close()

    def fetch_all(
        self,
        sql: str | ClauseElement,
        params: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Execute a SELECT returning multiple rows.
        """
        result = self._run(sql, params)
        try:
            return [dict(row) for row in result.mappings()]
        finally:
            result.close()
