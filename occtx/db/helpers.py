from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

from sqlalchemy import and_, bindparam, insert, select, update
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.sql import ClauseElement, column, table
from sqlalchemy.sql.dml import Insert, Update
from sqlalchemy.sql.expression import Select, TableClause

from ..errors import (
    LockTimeoutError,
    OcctxError,
    PoolExhaustedError,
    StatementFailureError,
)

# MySQL: 1205 ER_LOCK_WAIT_TIMEOUT, 3572 ER_LOCK_NOWAIT.
_MYSQL_LOCK_ERROR_CODES = (1205, 3572)
# PostgreSQL: lock_not_available (lock_timeout and NOWAIT).
_PG_LOCK_SQLSTATES = ("55P03",)


def _validate_identifier(name: str, identifier_type: str = "identifier") -> str:
    """
    Validate that an identifier (table/column name) is safe to place in SQL.

    ⚠️ SECURITY CONTRACT ⚠️
    Identifiers are quoted by the dialect, but they MUST still be trusted
    (hardcoded or whitelisted at application boundaries). Values are always
    sent as bound parameters.

    Raises:
        TypeError: If identifier is not a string
        ValueError: If identifier contains unsafe characters or is invalid

    Example:
        >>> _validate_identifier("reservations", "table")
        'reservations'
        >>> _validate_identifier("'; DROP TABLE--", "table")
        ValueError: Invalid table '; DROP TABLE--': ...
    """
    if not isinstance(name, str):
        raise TypeError(f"{identifier_type} must be a string, got {type(name).__name__}")

    if not name:
        raise ValueError(f"{identifier_type} cannot be empty")

    if not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", name):
        raise ValueError(
            f"Invalid {identifier_type} {name!r}: "
            "must start with letter/underscore and contain only alphanumeric characters and underscores"
        )

    # 63 is PostgreSQL's limit, the tightest of the supported dialects.
    if len(name) > 63:
        raise ValueError(f"{identifier_type} {name!r} exceeds the 63-character identifier limit")

    return name


def _table_clause(name: str, columns: Iterable[str]) -> TableClause:
    name = _validate_identifier(name, "table")
    cols = []
    seen = set()
    for col in columns:
        if col in seen:
            continue
        seen.add(col)
        cols.append(column(_validate_identifier(col, "column name")))
    return table(name, *cols)


def _key_predicate(tbl: TableClause, key: Mapping[str, Any]):
    # Sorted keys keep the generated SQL deterministic.
    return and_(
        *(
            tbl.c[col] == bindparam(f"key_{i}", value)
            for i, (col, value) in enumerate(sorted(key.items()))
        )
    )


def build_locking_select(
    table_name: str,
    key: Mapping[str, Any],
    columns: Iterable[str],
    *,
    nowait: bool = False,
) -> Select:
    """
    SELECT <key columns + columns> FROM table WHERE <key> FOR UPDATE [NOWAIT].

    The lock clause is rendered by the dialect; SQLite renders none.
    """
    return build_plain_select(table_name, key, columns).with_for_update(nowait=nowait)


def build_plain_select(
    table_name: str,
    key: Mapping[str, Any],
    columns: Iterable[str],
) -> Select:
    """SELECT <key columns + columns> FROM table WHERE <key>."""
    key_cols = sorted(key)
    selected = key_cols + [c for c in columns if c not in key]
    tbl = _table_clause(table_name, selected)
    return select(*(tbl.c[col] for col in selected)).where(_key_predicate(tbl, key))


def build_update_by_key(
    table_name: str,
    key: Mapping[str, Any],
    changes: Mapping[str, Any],
) -> Update:
    """UPDATE table SET <changes> WHERE <key>. Key columns cannot be changed."""
    if not changes:
        raise ValueError("changes must contain at least one column")
    overlapping = sorted(set(changes) & set(key))
    if overlapping:
        raise ValueError(f"primary key column(s) cannot be updated: {', '.join(overlapping)}")

    tbl = _table_clause(table_name, list(key) + sorted(changes))
    return (
        update(tbl)
        .where(_key_predicate(tbl, key))
        .values({tbl.c[col]: value for col, value in sorted(changes.items())})
    )


def build_insert(table_name: str, values: Mapping[str, Any], id_column: str | None = None) -> Insert:
    cols = sorted(values)
    if id_column is not None:
        cols.append(id_column)
    tbl = _table_clause(table_name, cols)
    return insert(tbl).values({tbl.c[col]: value for col, value in sorted(values.items())})


def describe_statement(stmt: ClauseElement | str) -> tuple[str, str]:
    """
    Return (table, op_type) for metrics labelling.

    op_type is "insert", "update", "select" or "unknown".
    """
    if isinstance(stmt, Insert):
        return stmt.table.name, "insert"
    if isinstance(stmt, Update):
        return stmt.table.name, "update"

    sql = str(stmt).strip()
    match = re.match(r"(?is)^insert\s+into\s+[`\"]?(\w+)", sql)
    if match:
        return match.group(1), "insert"
    match = re.match(r"(?is)^update\s+[`\"]?(\w+)", sql)
    if match:
        return match.group(1), "update"
    if re.match(r"(?is)^select\b", sql):
        return "unknown", "select"
    return "unknown", "unknown"


def values_equal(expected: Any, actual: Any) -> bool:
    """
    Exact equality for snapshot comparison.

    NULL equals NULL; NULL never equals a non-NULL value. Booleans are not
    treated as the integers 0/1.
    """
    if expected is None or actual is None:
        return expected is None and actual is None
    if isinstance(expected, bool) != isinstance(actual, bool):
        return False
    return expected == actual


def snapshot_diff(snapshot: Mapping[str, Any], current: Mapping[str, Any]) -> dict[str, Any]:
    """
    Compare only the fields present in `snapshot` against `current`.

    Returns the current values of the fields that differ (empty when they match).
    Fields absent from the snapshot are never compared.
    """
    diff: dict[str, Any] = {}
    for field_name, expected in snapshot.items():
        if field_name not in current:
            raise KeyError(f"re-read row is missing snapshot field {field_name!r}")
        actual = current[field_name]
        if not values_equal(expected, actual):
            diff[field_name] = actual
    return diff


def _is_lock_timeout(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)

    pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if pgcode in _PG_LOCK_SQLSTATES:
        return True

    args = getattr(orig, "args", None) or ()
    if args and args[0] in _MYSQL_LOCK_ERROR_CODES:
        return True

    error_msg = str(orig if orig is not None else exc).lower()
    return (
        "lock wait timeout" in error_msg
        or "lock timeout" in error_msg
        or "could not obtain lock" in error_msg
        or "database is locked" in error_msg
    )


def classify_db_error(exc: BaseException) -> OcctxError:
    """
    Map a database-level exception to the occtx error taxonomy.

    The returned error should be raised `from exc` by the caller so the
    driver error stays attached as __cause__.
    """
    if isinstance(exc, OcctxError):
        return exc
    if isinstance(exc, PoolTimeoutError):
        return PoolExhaustedError(str(exc))
    if isinstance(exc, OperationalError) and _is_lock_timeout(exc):
        return LockTimeoutError(str(exc))
    if isinstance(exc, SQLAlchemyError):
        return StatementFailureError(str(exc))
    raise TypeError(f"not a database error: {type(exc).__name__}")
