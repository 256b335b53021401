from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Sequence

Snapshot = Mapping[str, Any]
ChangeSet = Mapping[str, Any]


def freeze(values: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return a read-only copy of `values` that later caller mutation cannot reach."""
    return MappingProxyType(dict(values))


class TxState(str, Enum):
    IDLE = "idle"
    TRANSACTION_OPEN = "transaction_open"
    ROW_LOCKED = "row_locked"
    APPLYING = "applying"
    COMMITTED = "committed"
    CONFLICTED = "conflicted"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def terminal(self) -> bool:
        return self in (TxState.COMMITTED, TxState.ROLLED_BACK)


class Outcome(str, Enum):
    APPLIED = "applied"
    CONFLICTED = "conflicted"
    FAILED = "failed"


@dataclass(frozen=True)
class RecordRef:
    """
    The target record of an optimistic transaction, addressed by primary key.
    """
    table: str
    key: Mapping[str, Any]  # column -> value, single or composite primary key

    def __post_init__(self) -> None:
        if not self.key:
            raise ValueError("RecordRef.key must name at least one primary key column")
        object.__setattr__(self, "key", freeze(self.key))

    @property
    def identity(self) -> Any:
        """The key value, or a tuple of values (sorted by column) for composite keys."""
        if len(self.key) == 1:
            return next(iter(self.key.values()))
        return tuple(self.key[col] for col in sorted(self.key))

    @classmethod
    def from_snapshot(
        cls,
        table: str,
        snapshot: Snapshot,
        key_columns: Sequence[str] = ("id",),
    ) -> "RecordRef":
        missing = [col for col in key_columns if col not in snapshot]
        if missing:
            raise ValueError(
                f"Snapshot for {table!r} is missing primary key column(s): {', '.join(missing)}"
            )
        return cls(table=table, key={col: snapshot[col] for col in key_columns})


@dataclass(frozen=True)
class InsertSpec:
    """
    A dependent INSERT executed after the update and before commit.
    """
    table: str
    values: Mapping[str, Any]  # column -> value
    # Column whose value identifies the new row; None when no id is needed.
    id_column: Optional[str] = "id"

    def __post_init__(self) -> None:
        if not self.values:
            raise ValueError("InsertSpec.values must contain at least one column")
        object.__setattr__(self, "values", freeze(self.values))


@dataclass(frozen=True)
class Applied:
    affected_ids: tuple[Any, ...]
    history: tuple[TxState, ...] = field(default=(), compare=False)

    outcome = Outcome.APPLIED


@dataclass(frozen=True)
class Conflicted:
    # Freshly read values for the snapshot fields that differ.
    current_values: Mapping[str, Any]
    # True when the record no longer exists.
    missing: bool = False
    history: tuple[TxState, ...] = field(default=(), compare=False)

    outcome = Outcome.CONFLICTED


ConflictResult = Applied | Conflicted
