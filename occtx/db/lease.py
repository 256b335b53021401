from __future__ import annotations

import itertools
import logging
import threading
import time
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool

from ..config import PoolConfig
from ..errors import LeaseReleasedError
from .helpers import classify_db_error
from .metrics import observe_lease_acquired, observe_lease_failed, observe_lease_released

logger = logging.getLogger(__name__)

_lease_ids = itertools.count(1)

# Connection execution option naming the SQLite BEGIN mode for the next transaction.
SQLITE_BEGIN_OPTION = "occtx_sqlite_begin"
_SQLITE_BEGIN_MODES = ("DEFERRED", "IMMEDIATE", "EXCLUSIVE")


def install_sqlite_transactions(engine: Engine) -> None:
    """
    Make pysqlite emit BEGIN when SQLAlchemy begins a transaction.

    The driver otherwise defers BEGIN until the first DML statement, so a
    re-read at the start of a transaction runs outside it. SQLite has no row
    locks; a connection that needs the database write lock before reading
    sets execution_options(occtx_sqlite_begin="IMMEDIATE"). Waiting for the
    write lock is bounded by the driver's busy timeout and then fails with
    "database is locked".
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn: Connection) -> None:
        mode = conn.get_execution_options().get(SQLITE_BEGIN_OPTION, "DEFERRED")
        if mode not in _SQLITE_BEGIN_MODES:
            raise ValueError(f"Unsupported SQLite BEGIN mode {mode!r}")
        conn.exec_driver_sql(f"BEGIN {mode}")


class Lease:
    """
    Exclusive claim on one pooled connection.

    A Lease is owned by exactly one in-flight operation and must be released
    exactly once. release() is safe to call from every exit path; calls after
    the first are no-ops.

    Usage:
        with manager.lease() as lease:
            executor.execute(lease, record, snapshot, changes)
    """

    def __init__(self, manager: "LeaseManager", conn: Connection) -> None:
        self.id = next(_lease_ids)
        self._manager = manager
        self._conn: Connection | None = conn
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    @property
    def connection(self) -> Connection:
        """
        The leased connection.

        Raises:
            LeaseReleasedError: If the lease has already been released
        """
        if self._released or self._conn is None:
            raise LeaseReleasedError(f"Lease {self.id} has already been released")
        return self._conn

    def release(self) -> None:
        """
        Return the connection to the pool.

        Any transaction still open on the connection is rolled back first.
        """
        with self._lock:
            if self._released:
                return
            self._released = True
            conn, self._conn = self._conn, None

        try:
            if conn is not None:
                try:
                    if conn.in_transaction():
                        logger.warning(
                            "Lease %s released with an open transaction; rolling back", self.id
                        )
                        conn.rollback()
                finally:
                    conn.close()
        finally:
            self._manager._on_release(self)

    def __enter__(self) -> "Lease":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
        return False

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"<Lease {self.id} {state}>"


class LeaseManager:
    """
    Hands out Leases from a bounded SQLAlchemy connection pool.

    The pool is the only shared mutable resource; access goes exclusively
    through acquire()/release(). acquire() blocks while the pool is exhausted,
    up to the engine's pool timeout, then raises PoolExhaustedError.

    Usage:
        manager = LeaseManager.from_config(PoolConfig(url="postgresql+psycopg://..."))
        with manager.lease() as lease:
            ...
        manager.dispose()
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._outstanding = 0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: PoolConfig) -> "LeaseManager":
        connect_args = {}
        if config.url.startswith("sqlite"):
            # Pooled connections are checked out by whichever thread leases them.
            connect_args["check_same_thread"] = False
        engine = create_engine(
            config.url,
            poolclass=QueuePool,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout_s,
            pool_pre_ping=config.pool_pre_ping,
            pool_recycle=config.pool_recycle_s,
            connect_args=connect_args,
        )
        if engine.dialect.name == "sqlite":
            install_sqlite_transactions(engine)
        return cls(engine)

    @property
    def outstanding(self) -> int:
        """Number of Leases acquired from this manager and not yet released."""
        with self._lock:
            return self._outstanding

    def acquire(self) -> Lease:
        """
        Acquire one exclusive connection.

        Raises:
            PoolExhaustedError: If no connection is available within the pool timeout
            StatementFailureError: If a new connection could not be opened
        """
        start = time.monotonic()
        try:
            conn = self.engine.connect()
        except SQLAlchemyError as exc:
            error = classify_db_error(exc)
            observe_lease_failed(error.kind)
            logger.warning(
                "No connection acquired after %.3fs (%s): %s",
                time.monotonic() - start,
                error.kind,
                exc,
            )
            raise error from exc

        with self._lock:
            self._outstanding += 1
        lease = Lease(self, conn)
        observe_lease_acquired(time.monotonic() - start)
        logger.debug("Acquired lease %s", lease.id)
        return lease

    def release(self, lease: Lease) -> None:
        """Release a Lease. Releasing an already released Lease is a no-op."""
        if lease._manager is not self:
            raise ValueError(f"Lease {lease.id} was not acquired from this manager")
        lease.release()

    def _on_release(self, lease: Lease) -> None:
        with self._lock:
            self._outstanding -= 1
        observe_lease_released()
        logger.debug("Released lease %s", lease.id)

    @contextmanager
    def lease(self) -> Iterator[Lease]:
        """Acquire a Lease for the duration of the block; release it on every exit path."""
        lease = self.acquire()
        try:
            yield lease
        finally:
            lease.release()

    def dispose(self) -> None:
        self.engine.dispose()
