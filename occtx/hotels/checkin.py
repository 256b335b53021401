"""
Hotel workflows built on optimistic transactions.

Reads produce a Snapshot in a short DbSession; the connection goes back to
the pool before the caller decides anything. Writes go through an
OperationRunner, which re-reads and locks the row before applying.

    snapshot = fetch_reservation(manager, 43)
    room_no = pick_room(snapshot)          # think time, nothing held
    response = check_in(runner, snapshot, room_no, total=180.0)
    if response.outcome is Outcome.CONFLICTED:
        ...  # show response.current_values, re-fetch, let the user decide again
"""
from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from ..db.helpers import build_plain_select
from ..db.lease import LeaseManager
from ..db.models import InsertSpec
from ..db.session import DbSession
from ..operations import OperationRequest, OperationResponse, OperationRunner

RESERVATION_FIELDS = ("cust_id", "room_no", "checkin_date", "checkout_date", "no_guests")
CUSTOMER_FIELDS = ("name", "email", "phone", "city", "country")


def _fetch(
    manager: LeaseManager,
    table: str,
    key: Mapping[str, Any],
    fields: Sequence[str],
) -> Optional[dict[str, Any]]:
    with DbSession(manager) as session:
        return session.fetch_one(build_plain_select(table, key, fields))


def fetch_reservation(
    manager: LeaseManager,
    res_id: int,
    fields: Sequence[str] = RESERVATION_FIELDS,
) -> Optional[dict[str, Any]]:
    """Snapshot of one reservation (id plus `fields`), or None if it does not exist."""
    return _fetch(manager, "reservations", {"id": res_id}, fields)


def fetch_customer(
    manager: LeaseManager,
    customer_id: int,
    fields: Sequence[str] = CUSTOMER_FIELDS,
) -> Optional[dict[str, Any]]:
    return _fetch(manager, "customers", {"id": customer_id}, fields)


def check_in(
    runner: OperationRunner,
    snapshot: Mapping[str, Any],
    room_no: int,
    total: float | Decimal,
    invoice_date: dt.date | None = None,
) -> OperationResponse:
    """
    Assign a room and raise the invoice in one transaction.

    Applies only if the reservation still matches `snapshot` on every field the
    snapshot carries. On success the response lists the reservation id followed
    by the new invoice id.
    """
    if "id" not in snapshot:
        raise ValueError("reservation snapshot must include 'id'")

    invoice = InsertSpec(
        table="invoices",
        values={
            "res_id": snapshot["id"],
            # Decimal is not bindable on every driver; numeric columns accept text.
            "total": str(total) if isinstance(total, Decimal) else total,
            "invoice_date": invoice_date or dt.date.today(),
            "paid": False,
        },
    )
    request = OperationRequest(
        table="reservations",
        snapshot=snapshot,
        changes={"room_no": room_no},
        dependent_inserts=[invoice],
    )
    return runner.run(request)


def update_customer_email(
    runner: OperationRunner,
    snapshot: Mapping[str, Any],
    email: str,
) -> OperationResponse:
    request = OperationRequest(
        table="customers",
        snapshot=snapshot,
        changes={"email": email},
    )
    return runner.run(request)
