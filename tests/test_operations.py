from __future__ import annotations

import pytest

from occtx.config import PoolConfig
from occtx.db.lease import LeaseManager
from occtx.db.models import InsertSpec, Outcome, TxState
from occtx.hotels.checkin import fetch_reservation
from occtx.operations import ErrorDescriptor, OperationRequest, OperationResponse, OperationRunner


class TestOperationRequest:
    def test_from_dict_accepts_camel_case(self) -> None:
        request = OperationRequest.from_dict(
            {
                "table": "reservations",
                "snapshot": {"id": 43, "room_no": None},
                "changes": {"room_no": 309},
                "dependentInserts": [
                    {"table": "invoices", "values": {"res_id": 43, "total": 90}, "idColumn": None},
                ],
            }
        )

        assert request.record.key == {"id": 43}
        assert request.dependent_inserts == (
            InsertSpec(table="invoices", values={"res_id": 43, "total": 90}, id_column=None),
        )

    def test_from_dict_accepts_snake_case(self) -> None:
        request = OperationRequest.from_dict(
            {
                "table": "reservations",
                "snapshot": {"res_id": 43, "line": 2, "qty": 1},
                "changes": {"qty": 2},
                "dependent_inserts": [{"table": "audit", "values": {"note": "x"}}],
                "key_columns": ["res_id", "line"],
            }
        )

        assert request.record.identity == (2, 43)
        assert request.dependent_inserts[0].id_column == "id"

    def test_from_dict_requires_snapshot(self) -> None:
        with pytest.raises(ValueError, match="snapshot"):
            OperationRequest.from_dict({"table": "reservations", "changes": {"room_no": 1}})

    def test_snapshot_must_carry_the_key(self) -> None:
        request = OperationRequest(table="reservations", snapshot={"room_no": None}, changes={"room_no": 1})
        with pytest.raises(ValueError, match="primary key"):
            _ = request.record

    def test_changes_cannot_touch_the_key(self) -> None:
        with pytest.raises(ValueError):
            OperationRequest(table="reservations", snapshot={"id": 43}, changes={"id": 44})

    def test_empty_request_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            OperationRequest(table="reservations", snapshot={"id": 43}, changes={})

    def test_request_is_isolated_from_caller_dicts(self) -> None:
        snapshot = {"id": 43, "room_no": None}
        request = OperationRequest(table="reservations", snapshot=snapshot, changes={"room_no": 1})
        snapshot["room_no"] = 5
        assert request.snapshot["room_no"] is None


class TestOperationResponse:
    def test_applied_wire_shape(self) -> None:
        response = OperationResponse(outcome=Outcome.APPLIED, affected_ids=(43, 1))
        assert response.to_dict() == {"outcome": "applied", "affectedIds": [43, 1]}

    def test_conflicted_wire_shape(self) -> None:
        response = OperationResponse(outcome=Outcome.CONFLICTED, current_values={"room_no": 310})
        assert response.to_dict() == {"outcome": "conflicted", "currentValues": {"room_no": 310}}

    def test_failed_wire_shape(self) -> None:
        response = OperationResponse(
            outcome=Outcome.FAILED,
            error=ErrorDescriptor(kind="lock_timeout", message="timed out", retryable=True),
        )
        assert response.to_dict() == {
            "outcome": "failed",
            "error": {"kind": "lock_timeout", "message": "timed out", "retryable": True},
        }


def test_runner_applies_and_releases(runner: OperationRunner, hotel_db: LeaseManager, seed_reservation) -> None:
    seed_reservation(res_id=43, room_no=None)
    snapshot = fetch_reservation(hotel_db, 43)

    response = runner.run(
        OperationRequest(table="reservations", snapshot=snapshot, changes={"room_no": 309})
    )

    assert response.outcome is Outcome.APPLIED
    assert response.affected_ids == (43,)
    assert response.history[-1] is TxState.COMMITTED
    assert hotel_db.outstanding == 0


def test_runner_reports_conflict_distinctly(runner: OperationRunner, hotel_db: LeaseManager, seed_reservation) -> None:
    seed_reservation(res_id=43, room_no=310)

    response = runner.run(
        OperationRequest(table="reservations", snapshot={"id": 43, "room_no": None}, changes={"room_no": 309})
    )

    assert response.outcome is Outcome.CONFLICTED
    assert response.error is None
    assert response.to_dict()["currentValues"] == {"room_no": 310}


def test_runner_maps_statement_failure(runner: OperationRunner, hotel_db: LeaseManager, seed_reservation, read_table) -> None:
    seed_reservation(res_id=43, room_no=None)
    bad_insert = InsertSpec(table="no_such_table", values={"x": 1})

    response = runner.run(
        OperationRequest(
            table="reservations",
            snapshot={"id": 43, "room_no": None},
            changes={"room_no": 309},
            dependent_inserts=[bad_insert],
        )
    )

    assert response.outcome is Outcome.FAILED
    assert response.error.kind == "statement_failure"
    assert response.error.retryable is False
    assert response.history[-2:] == (TxState.FAILED, TxState.ROLLED_BACK)
    assert read_table("reservations")[0]["room_no"] is None
    assert hotel_db.outstanding == 0


def test_runner_maps_pool_exhaustion(db_url: str) -> None:
    manager = LeaseManager.from_config(PoolConfig(url=db_url, pool_size=1, pool_timeout_s=0.2))
    runner = OperationRunner(manager)
    try:
        with manager.lease():
            response = runner.run(
                OperationRequest(table="reservations", snapshot={"id": 1}, changes={"room_no": 1})
            )
    finally:
        manager.dispose()

    assert response.outcome is Outcome.FAILED
    assert response.error.kind == "pool_exhausted"
    assert response.error.retryable is True
    assert manager.outstanding == 0


def test_runner_maps_unreachable_database(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'missing_dir' / 'hotels.db'}"
    manager = LeaseManager.from_config(PoolConfig(url=url, pool_size=1, pool_timeout_s=0.2))
    runner = OperationRunner(manager)
    try:
        response = runner.run(
            OperationRequest(table="reservations", snapshot={"id": 43}, changes={"room_no": 309})
        )
    finally:
        manager.dispose()

    assert response.outcome is Outcome.FAILED
    assert response.error.kind == "statement_failure"
    assert response.error.retryable is False
    assert response.to_dict()["error"]["kind"] == "statement_failure"
    assert manager.outstanding == 0
