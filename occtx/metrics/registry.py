from prometheus_client import Counter, Gauge, Histogram

DB_WRITE_TOTAL = Counter(
    "occtx_db_write_total",
    "Write statements executed inside leased transactions",
    ["table", "op_type", "status"],
)

DB_WRITE_LATENCY_SECONDS = Histogram(
    "occtx_db_write_latency_seconds",
    "Time from statement start to transaction end",
    ["table", "op_type"],
)

DB_LOCK_ACQUIRE_LATENCY_SECONDS = Histogram(
    "occtx_db_lock_acquire_latency_seconds",
    "Time spent waiting for a row lock",
    ["strategy"],
)

LEASE_ACQUIRE_LATENCY_SECONDS = Histogram(
    "occtx_lease_acquire_latency_seconds",
    "Time spent waiting for a pooled connection",
)

LEASE_ACQUIRE_FAILURES_TOTAL = Counter(
    "occtx_lease_acquire_failures_total",
    "Lease acquisitions that failed, by reason",
    ["reason"],
)

LEASES_OUTSTANDING = Gauge(
    "occtx_leases_outstanding",
    "Leases currently held across all lease managers",
)

OCC_OUTCOME_TOTAL = Counter(
    "occtx_occ_outcome_total",
    "Optimistic transaction outcomes",
    ["table", "outcome"],
)
