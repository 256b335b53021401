from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy.exc import SQLAlchemyError

from ..config import ExecutorConfig
from ..errors import OcctxError, StatementFailureError
from .helpers import build_insert, build_update_by_key, classify_db_error, snapshot_diff
from .lease import Lease
from .locking.row_lock import RowLock, apply_lock_timeout
from .metrics import observe_occ_outcome
from .models import (
    Applied,
    ChangeSet,
    ConflictResult,
    Conflicted,
    InsertSpec,
    RecordRef,
    Snapshot,
    TxState,
    freeze,
)
from .tx import LeasedTransaction

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[TxState, tuple[TxState, ...]] = {
    TxState.IDLE: (TxState.TRANSACTION_OPEN,),
    TxState.TRANSACTION_OPEN: (TxState.ROW_LOCKED,),
    TxState.ROW_LOCKED: (TxState.APPLYING, TxState.CONFLICTED),
    TxState.APPLYING: (TxState.COMMITTED,),
    TxState.CONFLICTED: (TxState.ROLLED_BACK,),
    TxState.FAILED: (TxState.ROLLED_BACK,),
    TxState.COMMITTED: (),
    TxState.ROLLED_BACK: (),
}


class TxStateMachine:
    """
    Tracks one optimistic transaction through its states.

    Every non-terminal state may move to FAILED; all other moves must be
    listed in _TRANSITIONS.
    """

    def __init__(self) -> None:
        self.state = TxState.IDLE
        self.history: list[TxState] = [TxState.IDLE]

    def advance(self, new_state: TxState) -> None:
        allowed = _TRANSITIONS[self.state]
        if new_state is TxState.FAILED and not self.state.terminal and self.state is not TxState.FAILED:
            allowed = allowed + (TxState.FAILED,)
        if new_state not in allowed:
            raise RuntimeError(f"Illegal transaction state change {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)


class OptimisticExecutor:
    """
    Runs a read-compare-write transaction against one record on a leased connection.

    The executor does not acquire or release the Lease; the caller owns it
    (typically via LeaseManager.lease()). It holds no in-process lock and keeps
    no state between calls, so one instance may serve many threads.

    No retries are performed. A Conflicted result must be handled by the
    caller: re-fetch the record, decide again, resubmit.
    """

    def __init__(self, config: ExecutorConfig | None = None) -> None:
        self.config = config or ExecutorConfig()

    def execute(
        self,
        lease: Lease,
        record: RecordRef,
        snapshot: Snapshot,
        changes: ChangeSet,
        dependent_inserts: Iterable[InsertSpec] = (),
    ) -> ConflictResult:
        """
        Apply `changes` and `dependent_inserts` iff the record still matches `snapshot`.

        Args:
            lease: Held Lease; the transaction runs on its connection
            record: Target table and primary key
            snapshot: Caller's last-known values; only these fields are compared
            changes: Columns to update on the target record (may be empty)
            dependent_inserts: INSERTs executed in order after the update

        Returns:
            Applied with the record key followed by each inserted row's id, or
            Conflicted with the current values of the fields that differ

        Raises:
            LockTimeoutError: If the row lock could not be obtained in time
            StatementFailureError: If any statement failed
            PoolExhaustedError / LeaseReleasedError: Surfaced unchanged
        """
        snapshot = freeze(snapshot)
        changes = freeze(changes)
        inserts: Sequence[InsertSpec] = tuple(dependent_inserts)

        machine = TxStateMachine()
        tx = LeasedTransaction(lease)
        try:
            tx.begin(write_lock=True)
            machine.advance(TxState.TRANSACTION_OPEN)

            apply_lock_timeout(tx, self.config.lock_timeout_s)
            current = RowLock(
                tx,
                record.table,
                record.key,
                columns=sorted(snapshot),
                nowait=self.config.nowait,
            ).acquire()
            machine.advance(TxState.ROW_LOCKED)

            if current is None:
                return self._conflict(tx, machine, record, {}, missing=True)

            diff = snapshot_diff(snapshot, current)
            if diff:
                return self._conflict(tx, machine, record, diff)

            machine.advance(TxState.APPLYING)
            affected_ids = [record.identity]

            if changes:
                rowcount = tx.execute(build_update_by_key(record.table, record.key, changes))
                if rowcount == 0:
                    raise StatementFailureError(
                        f"UPDATE of locked row {record.table}:{record.identity} affected no rows"
                    )

            for spec in inserts:
                affected_ids.append(self._insert(tx, spec))

            tx.commit()
            machine.advance(TxState.COMMITTED)
        except BaseException as exc:
            self._fail(tx, machine, record)
            if isinstance(exc, SQLAlchemyError):
                error = classify_db_error(exc)
                error.history = tuple(machine.history)
                raise error from exc
            if isinstance(exc, OcctxError):
                exc.history = tuple(machine.history)
            raise

        observe_occ_outcome(record.table, "applied")
        logger.debug(
            "Applied change to %s:%s (%d dependent insert(s))",
            record.table,
            record.identity,
            len(inserts),
        )
        return Applied(affected_ids=tuple(affected_ids), history=tuple(machine.history))

    def _conflict(
        self,
        tx: LeasedTransaction,
        machine: TxStateMachine,
        record: RecordRef,
        current_values: Mapping[str, Any],
        missing: bool = False,
    ) -> Conflicted:
        machine.advance(TxState.CONFLICTED)
        tx.rollback()
        machine.advance(TxState.ROLLED_BACK)

        observe_occ_outcome(record.table, "conflicted")
        if missing:
            logger.info("Conflict on %s:%s: row no longer exists", record.table, record.identity)
        else:
            logger.info(
                "Conflict on %s:%s: stale field(s) %s",
                record.table,
                record.identity,
                ", ".join(sorted(current_values)),
            )
        return Conflicted(
            current_values=freeze(current_values),
            missing=missing,
            history=tuple(machine.history),
        )

    def _fail(self, tx: LeasedTransaction, machine: TxStateMachine, record: RecordRef) -> None:
        """Move to FAILED and roll back. Rollback errors are logged, never raised."""
        if machine.state.terminal:
            # Already rolled back on the conflict path.
            return
        if machine.state is not TxState.FAILED:
            machine.advance(TxState.FAILED)
        try:
            if not tx.closed:
                tx.rollback()
        except Exception:
            logger.warning(
                "Rollback failed on lease %s for %s:%s",
                tx.lease.id,
                record.table,
                record.identity,
                exc_info=True,
            )
        finally:
            machine.advance(TxState.ROLLED_BACK)
            observe_occ_outcome(record.table, "failed")

    def _insert(self, tx: LeasedTransaction, spec: InsertSpec) -> Any:
        if spec.id_column is None:
            tx.execute(build_insert(spec.table, spec.values))
            return None

        if spec.id_column in spec.values:
            tx.execute(build_insert(spec.table, spec.values))
            return spec.values[spec.id_column]

        stmt = build_insert(spec.table, spec.values, id_column=spec.id_column)
        if tx.supports_returning:
            stmt = stmt.returning(stmt.table.c[spec.id_column])
        return tx.execute_insert(stmt)
