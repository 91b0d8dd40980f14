"""SQL dialect providers for the supported warehouse flavors.

Each provider is a pure string builder: it never executes anything. The
query composer only talks to the `Dialect` interface, so any flavor can be
swapped in. Postgres syntax is the default; subclasses override only the
fragments their warehouse spells differently.
"""

from datetime import datetime, timezone


class Dialect:
    """Postgres-flavoured SQL fragments. Base class for every warehouse."""

    name = "postgres"
    # sqlglot dialect name used when transpiling fragments for parity checks
    sqlglot_dialect = "postgres"

    def __init__(self, project: str | None = None, dataset: str | None = None):
        self.project = project
        self.dataset = dataset

    @property
    def properties(self) -> dict:
        return {
            "type": "database",
            "query_language": "sql",
            "metric_caps": True,
            "approximate_percentiles": False,
        }

    def full_table_name(self, table: str) -> str:
        return table

    def format_timestamp(self, t: datetime) -> str:
        if t.tzinfo is not None:
            t = t.astimezone(timezone.utc)
        return f"'{t.strftime('%Y-%m-%d %H:%M:%S')}'"

    def add_hours(self, column: str, hours: int) -> str:
        return f"{column} + INTERVAL '{hours} hours'"

    def add_interval(self, column: str, days: int) -> str:
        return self.add_hours(column, days * 24)

    def subtract_minutes(self, column: str, minutes: int = 30) -> str:
        return f"{column} - INTERVAL '{minutes} minutes'"

    def regex_match(self, column: str, pattern: str) -> str:
        return f"{column} ~ {_quote(pattern)}"

    def date_trunc(self, column: str) -> str:
        return f"date_trunc('day', {column})"

    def date_diff(self, start: str, end: str) -> str:
        return f"(CAST({end} AS DATE) - CAST({start} AS DATE))"

    def percentile(self, column: str, fraction: float) -> str:
        return f"PERCENTILE_CONT({fraction}) WITHIN GROUP (ORDER BY {column})"


class RedshiftDialect(Dialect):
    name = "redshift"
    sqlglot_dialect = "redshift"

    def date_diff(self, start: str, end: str) -> str:
        return f"DATEDIFF(day, {start}, {end})"


class SnowflakeDialect(Dialect):
    name = "snowflake"
    sqlglot_dialect = "snowflake"

    def add_hours(self, column: str, hours: int) -> str:
        return f"DATEADD(hour, {hours}, {column})"

    def subtract_minutes(self, column: str, minutes: int = 30) -> str:
        return f"DATEADD(minute, -{minutes}, {column})"

    def regex_match(self, column: str, pattern: str) -> str:
        # REGEXP_LIKE anchors the whole string
        return f"REGEXP_LIKE({column}, {_quote('.*(' + pattern + ').*')})"

    def date_diff(self, start: str, end: str) -> str:
        return f"DATEDIFF(day, {start}, {end})"


class BigQueryDialect(Dialect):
    name = "bigquery"
    sqlglot_dialect = "bigquery"

    @property
    def properties(self) -> dict:
        return {**super().properties, "approximate_percentiles": True}

    def full_table_name(self, table: str) -> str:
        if self.project and self.dataset:
            return f"`{self.project}`.`{self.dataset}`.{table}"
        if self.dataset:
            return f"`{self.dataset}`.{table}"
        return table

    def add_hours(self, column: str, hours: int) -> str:
        return f"TIMESTAMP_ADD({column}, INTERVAL {hours} HOUR)"

    def subtract_minutes(self, column: str, minutes: int = 30) -> str:
        return f"TIMESTAMP_SUB({column}, INTERVAL {minutes} MINUTE)"

    def regex_match(self, column: str, pattern: str) -> str:
        return f"REGEXP_CONTAINS({column}, {_quote(pattern)})"

    def date_trunc(self, column: str) -> str:
        return f"TIMESTAMP_TRUNC({column}, DAY)"

    def date_diff(self, start: str, end: str) -> str:
        return f"DATE_DIFF(DATE({end}), DATE({start}), DAY)"

    def percentile(self, column: str, fraction: float) -> str:
        return f"APPROX_QUANTILES({column}, 100)[OFFSET({round(fraction * 100)})]"


class PrestoDialect(Dialect):
    """Presto / Trino / Athena."""

    name = "presto"
    sqlglot_dialect = "presto"

    @property
    def properties(self) -> dict:
        return {**super().properties, "approximate_percentiles": True}

    def add_hours(self, column: str, hours: int) -> str:
        return f"date_add('hour', {hours}, {column})"

    def subtract_minutes(self, column: str, minutes: int = 30) -> str:
        return f"date_add('minute', -{minutes}, {column})"

    def regex_match(self, column: str, pattern: str) -> str:
        return f"regexp_like({column}, {_quote(pattern)})"

    def date_diff(self, start: str, end: str) -> str:
        return (
            f"date_diff('day', date_trunc('day', CAST({start} AS TIMESTAMP)), "
            f"date_trunc('day', CAST({end} AS TIMESTAMP)))"
        )

    def percentile(self, column: str, fraction: float) -> str:
        return f"approx_percentile({column}, {fraction})"


class DuckDBDialect(Dialect):
    name = "duckdb"
    sqlglot_dialect = "duckdb"

    def regex_match(self, column: str, pattern: str) -> str:
        return f"regexp_matches({column}, {_quote(pattern)})"

    def date_diff(self, start: str, end: str) -> str:
        # Counts day boundaries crossed
        return f"date_diff('day', CAST({start} AS TIMESTAMP), CAST({end} AS TIMESTAMP))"

    def percentile(self, column: str, fraction: float) -> str:
        return f"quantile_cont({column}, {fraction})"


DIALECTS: dict[str, type[Dialect]] = {
    cls.name: cls
    for cls in (
        Dialect,
        RedshiftDialect,
        SnowflakeDialect,
        BigQueryDialect,
        PrestoDialect,
        DuckDBDialect,
    )
}
DIALECTS["athena"] = PrestoDialect
DIALECTS["trino"] = PrestoDialect


def get_dialect(name: str, **params) -> Dialect:
    """Instantiate the dialect registered under `name`."""
    try:
        cls = DIALECTS[name.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown warehouse dialect {name!r} (expected one of {sorted(DIALECTS)})"
        ) from None
    return cls(**params)


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def quote_literal(value) -> str:
    """Render a Python value as a single-quoted SQL string literal."""
    return _quote(str(value))
