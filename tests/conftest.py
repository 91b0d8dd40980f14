"""Shared fixtures: a small in-memory DuckDB warehouse with known answers.

Experiment `exp1` (anonymous ids, 72h window, phase 2021-01-01..2021-01-10):
    variation 0: a1, a2        variation 1: a3, a4
    a5 logged an unknown variation "7"; a3 viewed twice.
Purchases (anonymous + user ids): a1 converts twice (50, then 200), a2 buys
before assignment (10) and has a refund, a3 buys twice (30, 30), a4 buys
outside the window. February rows back the page-visit and impact tests.
Orders are tracked by user id only, bridged through `identifies`.
"""

from datetime import datetime

import pytest

from src.analysis.experiment import WarehouseIntegration
from src.analysis.schemas import (
    ExperimentDefinition,
    ExperimentPhase,
    MetricDefinition,
)
from src.warehouse.db import DuckDBRunner, get_connection, init_db, insert_rows
from src.warehouse.dialects import DuckDBDialect


def _ts(s: str) -> datetime:
    return datetime.fromisoformat(s)


EXPERIMENT_VIEWS = [
    ("u1", "a1", "2021-01-02 10:00:00", "exp1", "0"),
    ("u2", "a2", "2021-01-02 11:00:00", "exp1", "0"),
    ("u3", "a3", "2021-01-02 12:00:00", "exp1", "1"),
    ("u3", "a3", "2021-01-04 12:00:00", "exp1", "1"),
    ("u4", "a4", "2021-01-03 09:00:00", "exp1", "1"),
    ("u5", "a5", "2021-01-03 09:00:00", "exp1", "7"),
    ("u1", "a1", "2021-01-03 09:00:00", "exp2", "1"),
]

PURCHASES = [
    ("u1", "a1", "2021-01-02 12:00:00", 50.0, "paid"),
    ("u1", "a1", "2021-01-03 08:00:00", 200.0, "paid"),
    ("u2", "a2", "2021-01-02 10:50:00", 10.0, "paid"),
    ("u2", "a2", "2021-01-02 12:00:00", 500.0, "refunded"),
    ("u3", "a3", "2021-01-02 13:00:00", 30.0, "paid"),
    ("u3", "a3", "2021-01-02 14:00:00", 30.0, "paid"),
    ("u4", "a4", "2021-01-20 09:00:00", 99.0, "paid"),
    ("u1", "a1", "2021-02-01 11:00:00", 10.0, "paid"),
    ("u3", "a3", "2021-02-02 12:00:00", 30.0, "paid"),
    ("u3", "a3", "2021-02-03 12:00:00", 50.0, "paid"),
]

ORDERS = [
    ("u1", "2021-01-02 15:00:00", 20.0),
    ("u3", "2021-01-02 16:00:00", 40.0),
]

PAGES = [
    ("u1", "a1", "2021-02-01 10:00:00", "/pricing"),
    ("u2", "a2", "2021-02-01 10:00:00", "/home"),
    ("u3", "a3", "2021-02-02 09:00:00", "/pricing/team"),
]

IDENTIFIES = [
    ("u1", "a1"),
    ("u2", "a2"),
    ("u3", "a3"),
    ("u4", "a4"),
]


def load_fixture_data(conn) -> None:
    init_db(conn)
    conn.execute(
        """
        CREATE TABLE purchases (
            user_id VARCHAR, anonymous_id VARCHAR, received_at TIMESTAMP,
            amount DOUBLE, status VARCHAR
        )
        """
    )
    conn.execute("CREATE TABLE orders (user_id VARCHAR, received_at TIMESTAMP, total DOUBLE)")

    insert_rows(conn, "experiment_viewed", [
        {"user_id": u, "anonymous_id": a, "received_at": _ts(t),
         "experiment_id": e, "variation_id": v}
        for u, a, t, e, v in EXPERIMENT_VIEWS
    ])
    insert_rows(conn, "purchases", [
        {"user_id": u, "anonymous_id": a, "received_at": _ts(t), "amount": amt, "status": s}
        for u, a, t, amt, s in PURCHASES
    ])
    insert_rows(conn, "orders", [
        {"user_id": u, "received_at": _ts(t), "total": total} for u, t, total in ORDERS
    ])
    insert_rows(conn, "pages", [
        {"user_id": u, "anonymous_id": a, "received_at": _ts(t), "path": p}
        for u, a, t, p in PAGES
    ])
    insert_rows(conn, "identifies", [
        {"user_id": u, "anonymous_id": a} for u, a in IDENTIFIES
    ])


@pytest.fixture
def warehouse():
    """In-memory DuckDB loaded with the fixture data."""
    conn = get_connection(db_path=":memory:")
    load_fixture_data(conn)
    yield conn
    conn.close()


@pytest.fixture
def integration(warehouse):
    return WarehouseIntegration(DuckDBRunner(warehouse), DuckDBDialect())


@pytest.fixture
def experiment():
    return ExperimentDefinition(
        id="exp_1",
        tracking_key="exp1",
        user_id_type="anonymous",
        variations=["0", "1"],
        phases=[ExperimentPhase(date_started=_ts("2021-01-01"), date_ended=_ts("2021-01-10"))],
        conversion_window_hours=72,
    )


@pytest.fixture
def phase(experiment):
    return experiment.phases[0]


@pytest.fixture
def purchased():
    """Binomial: made a paid purchase."""
    return MetricDefinition(
        id="met_purchased",
        name="Purchased",
        type="binomial",
        table="purchases",
        user_id_type="anonymous",
        conditions=[{"column": "status", "operator": "=", "value": "paid"}],
    )


@pytest.fixture
def revenue():
    """Revenue from paid purchases, capped at 100."""
    return MetricDefinition(
        id="met_revenue",
        name="Revenue",
        type="revenue",
        table="purchases",
        column="amount",
        cap=100,
        user_id_type="anonymous",
        conditions=[{"column": "status", "operator": "=", "value": "paid"}],
    )
