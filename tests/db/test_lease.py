from __future__ import annotations

import pytest
from sqlalchemy import event, text
from sqlalchemy.exc import OperationalError

from occtx.config import PoolConfig
from occtx.db.lease import SQLITE_BEGIN_OPTION, LeaseManager
from occtx.db.tx import LeasedTransaction
from occtx.errors import LeaseReleasedError, PoolExhaustedError, StatementFailureError
from occtx.metrics.registry import LEASE_ACQUIRE_FAILURES_TOTAL


@pytest.fixture
def tiny_manager(db_url: str):
    """A pool with exactly one connection and a short wait."""
    mgr = LeaseManager.from_config(
        PoolConfig(url=db_url, pool_size=1, max_overflow=0, pool_timeout_s=0.2)
    )
    yield mgr
    mgr.dispose()


def test_acquire_and_release_balance_outstanding(manager: LeaseManager) -> None:
    before = manager.outstanding

    lease = manager.acquire()
    assert manager.outstanding == before + 1
    assert lease.released is False

    manager.release(lease)
    assert manager.outstanding == before
    assert lease.released is True


def test_release_is_idempotent(manager: LeaseManager) -> None:
    before = manager.outstanding

    lease = manager.acquire()
    lease.release()
    lease.release()
    manager.release(lease)

    assert manager.outstanding == before


def test_released_lease_cannot_be_used(manager: LeaseManager) -> None:
    lease = manager.acquire()
    lease.release()

    with pytest.raises(LeaseReleasedError):
        _ = lease.connection


def test_context_manager_releases_on_exception(manager: LeaseManager) -> None:
    before = manager.outstanding

    with pytest.raises(RuntimeError):
        with manager.lease() as lease:
            assert manager.outstanding == before + 1
            raise RuntimeError("boom")

    assert lease.released is True
    assert manager.outstanding == before


def test_lease_gives_exclusive_connections(manager: LeaseManager) -> None:
    with manager.lease() as first, manager.lease() as second:
        assert first.connection is not second.connection
        assert first.id != second.id


def test_pool_exhausted_raises_and_holds_nothing(tiny_manager: LeaseManager) -> None:
    held = tiny_manager.acquire()
    try:
        with pytest.raises(PoolExhaustedError):
            tiny_manager.acquire()
        # The failed acquire must not count as outstanding.
        assert tiny_manager.outstanding == 1
    finally:
        held.release()

    assert tiny_manager.outstanding == 0
    with tiny_manager.lease():
        assert tiny_manager.outstanding == 1


def test_pool_exhausted_is_retryable(tiny_manager: LeaseManager) -> None:
    with tiny_manager.lease():
        with pytest.raises(PoolExhaustedError) as excinfo:
            tiny_manager.acquire()

    assert excinfo.value.retryable is True
    assert excinfo.value.kind == "pool_exhausted"


def test_release_rolls_back_open_transaction(hotel_db: LeaseManager, read_table) -> None:
    lease = hotel_db.acquire()
    conn = lease.connection
    conn.begin()
    conn.execute(
        text(
            "INSERT INTO customers (id, name, email) VALUES (:id, :name, :email)"
        ),
        {"id": 1, "name": "Grace", "email": "grace@example.com"},
    )
    lease.release()

    assert read_table("customers") == []


def test_release_through_foreign_manager_is_rejected(manager: LeaseManager, db_url: str) -> None:
    other = LeaseManager.from_config(PoolConfig(url=db_url, pool_size=1))
    try:
        with manager.lease() as lease:
            with pytest.raises(ValueError):
                other.release(lease)
            assert lease.released is False
    finally:
        other.dispose()


def test_unopenable_database_is_classified(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'missing_dir' / 'hotels.db'}"
    mgr = LeaseManager.from_config(PoolConfig(url=url, pool_size=1, pool_timeout_s=0.2))
    failures_before = LEASE_ACQUIRE_FAILURES_TOTAL.labels(reason="statement_failure")._value.get()
    try:
        with pytest.raises(StatementFailureError) as excinfo:
            mgr.acquire()
    finally:
        mgr.dispose()

    assert excinfo.value.retryable is False
    assert isinstance(excinfo.value.__cause__, OperationalError)
    assert mgr.outstanding == 0
    assert (
        LEASE_ACQUIRE_FAILURES_TOTAL.labels(reason="statement_failure")._value.get()
        == failures_before + 1
    )


def test_sqlite_transactions_begin_explicitly(manager: LeaseManager) -> None:
    if manager.engine.dialect.name != "sqlite":
        pytest.skip("SQLite-only transaction setup")

    statements: list[str] = []

    @event.listens_for(manager.engine, "before_cursor_execute")
    def _record(conn, cursor, statement, parameters, context, executemany) -> None:
        statements.append(statement)

    try:
        with manager.lease() as lease:
            tx = LeasedTransaction(lease)
            tx.begin(write_lock=True)
            tx.rollback()
            # The write-lock mode applies to that transaction only.
            assert lease.connection.get_execution_options()[SQLITE_BEGIN_OPTION] == "DEFERRED"

            tx = LeasedTransaction(lease)
            tx.begin()
            tx.rollback()
    finally:
        event.remove(manager.engine, "before_cursor_execute", _record)

    assert statements == ["BEGIN IMMEDIATE", "BEGIN DEFERRED"]
