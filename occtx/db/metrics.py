from __future__ import annotations

from ..metrics.registry import (
    DB_LOCK_ACQUIRE_LATENCY_SECONDS,
    DB_WRITE_LATENCY_SECONDS,
    DB_WRITE_TOTAL,
    LEASE_ACQUIRE_FAILURES_TOTAL,
    LEASE_ACQUIRE_LATENCY_SECONDS,
    LEASES_OUTSTANDING,
    OCC_OUTCOME_TOTAL,
)


def observe_db_write(table: str, op_type: str, status: str, latency_s: float) -> None:
    DB_WRITE_TOTAL.labels(table=table, op_type=op_type, status=status).inc()
    DB_WRITE_LATENCY_SECONDS.labels(table=table, op_type=op_type).observe(latency_s)


def observe_lock_acquisition(strategy: str, latency_s: float, success: bool) -> None:
    """Record lock wait latency. Failed acquisitions are not recorded."""
    if not success:
        return
    DB_LOCK_ACQUIRE_LATENCY_SECONDS.labels(strategy=strategy).observe(latency_s)


def observe_lease_acquired(latency_s: float) -> None:
    LEASE_ACQUIRE_LATENCY_SECONDS.observe(latency_s)
    LEASES_OUTSTANDING.inc()


def observe_lease_failed(reason: str) -> None:
    LEASE_ACQUIRE_FAILURES_TOTAL.labels(reason=reason).inc()


def observe_lease_released() -> None:
    LEASES_OUTSTANDING.dec()


def observe_occ_outcome(table: str, outcome: str) -> None:
    OCC_OUTCOME_TOTAL.labels(table=table, outcome=outcome).inc()
