from __future__ import annotations

import pytest

from _harness import db_url


def _selected(config: pytest.Config, marker_name: str) -> bool:
    """True if the `-m` expression names marker_name at all."""
    expr = getattr(config.option, "markexpr", "") or ""
    return marker_name in expr


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """
    Concurrency tests run only with `-m concurrency` (or `-m demo`); demo tests
    only with `-m demo`. Both need a database server with row locks, so a
    SQLite OCCTX_TEST_DB_URL skips them too.
    """
    run_demo = _selected(config, "demo")
    run_concurrency = run_demo or _selected(config, "concurrency")
    on_sqlite = db_url().startswith("sqlite")

    skip_opt_in = pytest.mark.skip(
        reason="Skipped: run with `pytest -m concurrency` (or `-m demo`) against a database server."
    )
    skip_sqlite = pytest.mark.skip(reason="Skipped: SQLite has no row locks; set OCCTX_TEST_DB_URL to a server.")

    for item in items:
        is_demo = item.get_closest_marker("demo") is not None
        is_concurrency = is_demo or item.get_closest_marker("concurrency") is not None
        if not is_concurrency:
            continue
        if (is_demo and not run_demo) or not run_concurrency:
            item.add_marker(skip_opt_in)
        elif on_sqlite:
            item.add_marker(skip_sqlite)
