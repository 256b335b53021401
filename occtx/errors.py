class OcctxError(Exception):
    """Base exception for occtx errors."""

    kind = "error"
    retryable = False


class PoolExhaustedError(OcctxError):
    """No pooled connection became available within the pool timeout."""

    kind = "pool_exhausted"
    retryable = True


class LockTimeoutError(OcctxError):
    """Failed to acquire a row lock within the timeout period."""

    kind = "lock_timeout"
    retryable = True


class StatementFailureError(OcctxError):
    """A statement failed (constraint violation, lost connection, bad SQL)."""

    kind = "statement_failure"


class LeaseReleasedError(OcctxError):
    """A lease was used after it had been returned to the pool."""

    kind = "lease_released"
