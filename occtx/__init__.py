from .config import ExecutorConfig, PoolConfig
from .db.executor import OptimisticExecutor
from .db.lease import LeaseManager
from .operations import OperationRequest, OperationResponse, OperationRunner

__all__ = [
    "ExecutorConfig",
    "LeaseManager",
    "OperationRequest",
    "OperationResponse",
    "OperationRunner",
    "OptimisticExecutor",
    "PoolConfig",
]
