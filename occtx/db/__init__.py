from .executor import OptimisticExecutor, TxStateMachine
from .lease import Lease, LeaseManager
from .locking.row_lock import RowLock
from .models import Applied, Conflicted, InsertSpec, Outcome, RecordRef, TxState
from .session import DbSession
from .tx import DbTx, LeasedTransaction

__all__ = [
    "Applied",
    "Conflicted",
    "DbSession",
    "DbTx",
    "InsertSpec",
    "Lease",
    "LeaseManager",
    "LeasedTransaction",
    "OptimisticExecutor",
    "Outcome",
    "RecordRef",
    "RowLock",
    "TxState",
    "TxStateMachine",
]
