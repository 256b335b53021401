from .row_lock import RowLock, apply_lock_timeout

__all__ = ["RowLock", "apply_lock_timeout"]
