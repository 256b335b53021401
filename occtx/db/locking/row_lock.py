from __future__ import annotations

import logging
import math
import time
from typing import Any, Iterable, Mapping

from sqlalchemy import text

from ..helpers import build_locking_select
from ..metrics import observe_lock_acquisition
from ..tx import DbTx

logger = logging.getLogger(__name__)


def apply_lock_timeout(tx: DbTx, timeout_s: float) -> None:
    """
    Bound how long the next row lock may wait, using the dialect's own setting.

    - PostgreSQL: SET LOCAL lock_timeout (scoped to the current transaction)
    - MySQL/MariaDB: SET SESSION innodb_lock_wait_timeout (whole seconds, min 1;
      stays on the pooled connection until overwritten)
    - SQLite: no row locks; the database write lock is taken at
      BEGIN IMMEDIATE (LeasedTransaction.begin(write_lock=True)) and the wait
      is bounded by the driver's busy timeout, so nothing is emitted
    """
    dialect = tx.dialect_name
    if dialect == "postgresql":
        millis = max(1, int(timeout_s * 1000))
        tx.execute_control(text(f"SET LOCAL lock_timeout = '{millis}ms'"))
    elif dialect in ("mysql", "mariadb"):
        seconds = max(1, math.ceil(timeout_s))
        tx.execute_control(text(f"SET SESSION innodb_lock_wait_timeout = {seconds}"))
    else:
        logger.debug("No lock timeout statement for dialect %s", dialect)


class RowLock:
    """
    Pessimistic read protection using SELECT ... FOR UPDATE.

    Row locks are held for the entire duration of the surrounding transaction
    and are released only when the transaction commits or rolls back.

    This is NOT a context manager - locks are transaction-scoped, not method-scoped.

    **Important: Indexing Requirements**

    The WHERE clause should address the primary key (or another unique index).
    Non-indexed predicates may cause full scans, gap locks and unexpected
    contention.

    Usage:
        tx.begin()
        row = RowLock(tx, "reservations", {"id": 43}, columns=["room_no"]).acquire()
        if row is None:
            ...  # row doesn't exist
    """

    def __init__(
        self,
        session: DbTx,
        table: str,
        where: Mapping[str, Any],
        columns: Iterable[str] = (),
        nowait: bool = False,
    ) -> None:
        """
        Initialize a row lock.

        Args:
            session: Active DbSession or LeasedTransaction
            table: Table name
            where: Primary key column -> value
                   (e.g., {"id": 43} or {"res_id": 43, "line_no": 1})
            columns: Additional columns to return with the locked row
            nowait: Fail immediately instead of waiting if the row is locked
        """
        self.session = session
        self.table = table
        self.where = dict(where)
        self.columns = list(columns)
        self.nowait = nowait

    def acquire(self) -> dict | None:
        """
        Acquire a row-level lock and return the selected columns.

        If the row doesn't exist, returns None.

        Raises:
            RuntimeError: If the session/transaction is not active
        """
        if not self.session.active:
            raise RuntimeError(
                "RowLock.acquire() requires an active transaction. "
                "Use RowLock within a DbSession block or after LeasedTransaction.begin()."
            )

        stmt = build_locking_select(self.table, self.where, self.columns, nowait=self.nowait)

        start = time.monotonic()
        row = self.session.fetch_one(stmt)
        observe_lock_acquisition("row", time.monotonic() - start, True)
        return row
