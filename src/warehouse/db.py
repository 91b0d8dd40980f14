"""DuckDB warehouse connection and query execution.

Analysis code only needs one capability from a warehouse: run a SQL string
and get back rows whose values are text. `QueryRunner` is that contract;
`DuckDBRunner` implements it on top of a local DuckDB database, which also
serves as the reference warehouse for tests.
"""

import asyncio
import contextlib
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Protocol

import duckdb

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("data/analytics.duckdb")

# Tracking tables in the layout the default source settings expect
_CREATE_TRACKING_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS experiment_viewed (
        user_id        VARCHAR,
        anonymous_id   VARCHAR,
        received_at    TIMESTAMP NOT NULL,
        experiment_id  VARCHAR NOT NULL,
        variation_id   VARCHAR NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS pages (
        user_id        VARCHAR,
        anonymous_id   VARCHAR,
        received_at    TIMESTAMP NOT NULL,
        path           VARCHAR
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS identifies (
        user_id        VARCHAR NOT NULL,
        anonymous_id   VARCHAR NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id        VARCHAR PRIMARY KEY,
        received_at    TIMESTAMP
    );
    """,
]


class QueryRunner(Protocol):
    """Runs read-only SQL and returns rows of text values."""

    async def run(self, sql: str) -> list[dict[str, str | None]]: ...


def get_connection(db_path: Path | str = DEFAULT_DB_PATH) -> duckdb.DuckDBPyConnection:
    """Open a DuckDB connection, creating the database file if needed.

    Pass \":memory:\" for an in-memory database (useful for testing).
    """
    if str(db_path) == ":memory:":
        return duckdb.connect(":memory:")
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(str(db_path))


def init_db(conn: duckdb.DuckDBPyConnection) -> None:
    """Create the default tracking tables if they don't exist."""
    for ddl in _CREATE_TRACKING_TABLES:
        conn.execute(ddl)


def insert_rows(conn: duckdb.DuckDBPyConnection, table: str, rows: list[dict]) -> int:
    """Insert dict rows into `table`. All rows must share the same keys."""
    if not rows:
        return 0
    columns = list(rows[0])
    placeholders = ", ".join("?" for _ in columns)
    conn.executemany(
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
        [[row[c] for c in columns] for row in rows],
    )
    return len(rows)


def count_rows(conn: duckdb.DuckDBPyConnection, table: str) -> int:
    """Return the number of rows in `table`."""
    result = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
    return result[0]


def _to_text(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


class DuckDBRunner:
    """`QueryRunner` backed by a DuckDB connection.

    Each query runs on its own cursor in a worker thread, so several queries
    can be in flight at once. A query that overruns the timeout, or whose
    caller is cancelled, is interrupted inside DuckDB.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection, timeout: float | None = None):
        self.conn = conn
        self.timeout = timeout

    @staticmethod
    def _execute(cursor: duckdb.DuckDBPyConnection, sql: str) -> list[dict]:
        try:
            result = cursor.execute(sql)
            columns = [d[0] for d in result.description]
            return [
                {col: _to_text(value) for col, value in zip(columns, row)}
                for row in result.fetchall()
            ]
        finally:
            cursor.close()

    async def run(self, sql: str) -> list[dict[str, str | None]]:
        cursor = self.conn.cursor()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._execute, cursor, sql), self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Query exceeded %ss timeout, interrupting", self.timeout)
            self._interrupt(cursor)
            raise
        except asyncio.CancelledError:
            self._interrupt(cursor)
            raise

    @staticmethod
    def _interrupt(cursor: duckdb.DuckDBPyConnection) -> None:
        # The worker may have finished and closed the cursor already
        with contextlib.suppress(duckdb.Error):
            cursor.interrupt()

    async def test_connection(self) -> bool:
        await self.run("select 1")
        return True
