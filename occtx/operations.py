from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from .db.executor import OptimisticExecutor
from .db.lease import LeaseManager
from .db.models import Applied, InsertSpec, Outcome, RecordRef, freeze
from .errors import OcctxError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationRequest:
    """
    One optimistic update as submitted by a caller.

    The target record's primary key is taken from the snapshot.
    """
    table: str
    snapshot: Mapping[str, Any]
    changes: Mapping[str, Any]
    dependent_inserts: Sequence[InsertSpec] = ()
    key_columns: Sequence[str] = ("id",)

    def __post_init__(self) -> None:
        object.__setattr__(self, "snapshot", freeze(self.snapshot))
        object.__setattr__(self, "changes", freeze(self.changes))
        object.__setattr__(self, "dependent_inserts", tuple(self.dependent_inserts))
        object.__setattr__(self, "key_columns", tuple(self.key_columns))

        overlapping = sorted(set(self.changes) & set(self.key_columns))
        if overlapping:
            raise ValueError(f"changes cannot modify primary key column(s): {', '.join(overlapping)}")
        if not self.changes and not self.dependent_inserts:
            raise ValueError("request has neither changes nor dependent inserts")

    @property
    def record(self) -> RecordRef:
        return RecordRef.from_snapshot(self.table, self.snapshot, self.key_columns)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "OperationRequest":
        """
        Parse the caller payload.

        Accepts camelCase or snake_case keys:
            {
                "table": "reservations",
                "snapshot": {"id": 43, "room_no": None},
                "changes": {"room_no": 309},
                "dependentInserts": [{"table": "invoices", "values": {...}, "idColumn": "id"}],
                "keyColumns": ["id"]
            }
        """
        try:
            table = payload["table"]
            snapshot = payload["snapshot"]
            changes = payload.get("changes") or {}
        except KeyError as exc:
            raise ValueError(f"request is missing required field {exc.args[0]!r}") from exc

        raw_inserts = payload.get("dependentInserts", payload.get("dependent_inserts")) or ()
        inserts = []
        for raw in raw_inserts:
            if "idColumn" in raw:
                id_column = raw["idColumn"]
            else:
                id_column = raw.get("id_column", "id")
            inserts.append(InsertSpec(table=raw["table"], values=raw["values"], id_column=id_column))

        key_columns = payload.get("keyColumns", payload.get("key_columns")) or ("id",)
        return cls(
            table=table,
            snapshot=snapshot,
            changes=changes,
            dependent_inserts=inserts,
            key_columns=key_columns,
        )


@dataclass(frozen=True)
class ErrorDescriptor:
    kind: str
    message: str
    retryable: bool

    @classmethod
    def from_error(cls, error: OcctxError) -> "ErrorDescriptor":
        return cls(kind=error.kind, message=str(error), retryable=error.retryable)


@dataclass(frozen=True)
class OperationResponse:
    outcome: Outcome
    affected_ids: Optional[tuple[Any, ...]] = None
    current_values: Optional[Mapping[str, Any]] = None
    missing: bool = False
    error: Optional[ErrorDescriptor] = None
    history: tuple = field(default=(), compare=False)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"outcome": self.outcome.value}
        if self.affected_ids is not None:
            body["affectedIds"] = list(self.affected_ids)
        if self.current_values is not None:
            body["currentValues"] = dict(self.current_values)
        if self.missing:
            body["missing"] = True
        if self.error is not None:
            body["error"] = {
                "kind": self.error.kind,
                "message": self.error.message,
                "retryable": self.error.retryable,
            }
        return body


class OperationRunner:
    """
    Runs OperationRequests: lease a connection, execute, always release.

    Classified errors (OcctxError) become a "failed" response so the calling
    layer can tell "ask the user to retry with fresh data" (conflicted) from
    "report a system error" (failed). Anything else propagates.
    """

    def __init__(self, manager: LeaseManager, executor: OptimisticExecutor | None = None) -> None:
        self.manager = manager
        self.executor = executor or OptimisticExecutor()

    def run(self, request: OperationRequest) -> OperationResponse:
        record = request.record
        try:
            with self.manager.lease() as lease:
                result = self.executor.execute(
                    lease,
                    record,
                    request.snapshot,
                    request.changes,
                    request.dependent_inserts,
                )
        except OcctxError as exc:
            logger.warning(
                "Operation on %s:%s failed (%s): %s", record.table, record.identity, exc.kind, exc
            )
            return OperationResponse(
                outcome=Outcome.FAILED,
                error=ErrorDescriptor.from_error(exc),
                history=getattr(exc, "history", ()),
            )

        if isinstance(result, Applied):
            return OperationResponse(
                outcome=Outcome.APPLIED,
                affected_ids=result.affected_ids,
                history=result.history,
            )
        return OperationResponse(
            outcome=Outcome.CONFLICTED,
            current_values=result.current_values,
            missing=result.missing,
            history=result.history,
        )
