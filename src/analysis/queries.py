"""SQL composition for experiment and metric analysis.

Every query is a chain of derived tables (CTEs) ending in one SELECT. Each
derived table has its own builder method so fragments can be inspected on
their own. Composition is pure: nothing here touches the warehouse.

Shared column contract between fragments: every per-user derived table
exposes `user_id`, `actual_start`, `conversion_end` and `session_start`;
metric tables add `value`, experiment tables add `variation`.
"""

import re
from datetime import datetime, timezone

import sqlparse

from src.analysis.identity import reconcile
from src.analysis.schemas import (
    REGEX_OPERATORS,
    DimensionDefinition,
    ExperimentDefinition,
    ExperimentPhase,
    IdType,
    MetricDefinition,
    MetricType,
    MetricValueParams,
    SegmentDefinition,
    UsersQueryParams,
)
from src.warehouse.dialects import Dialect, quote_literal
from src.warehouse.settings import SourceSettings

PERCENTILES = [0.01, 0.05, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 0.95, 0.99]

# Past experiment discovery thresholds
NOISE_THRESHOLD_RATIO = 0.05  # fraction of a variation's peak daily users
MIN_DAILY_USERS = 5
MIN_TOTAL_USERS = 200
MIN_DURATION_DAYS = 5
HORIZON_BUFFER_DAYS = 2

_PLACEHOLDERS = {
    "date_start": re.compile(r"{{\s*dateStart\s*}}"),
    "date_end": re.compile(r"{{\s*dateEnd\s*}}"),
    "experiment_key": re.compile(r"{{\s*experimentKey\s*}}"),
}
_ALIAS_PLACEHOLDER = "{alias}"


def format_sql(sql: str) -> str:
    """Pretty-print a query for the audit trail."""
    return sqlparse.format(sql, reindent=True).strip()


def join_queries(queries: list[str]) -> str:
    """Combine several queries into one auditable script."""
    return ";\n\n".join(format_sql(q) for q in queries) + ";"


def percentile_alias(fraction: float) -> str:
    return f"p{round(fraction * 100)}"


def _number(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else repr(value)


def date_only(d: datetime) -> datetime:
    return d.replace(hour=0, minute=0, second=0, microsecond=0)


class QueryComposer:
    """Builds dialect-specific SQL for one data source."""

    def __init__(self, settings: SourceSettings, dialect: Dialect):
        self.settings = settings
        self.dialect = dialect

    # ------------------------------------------------------------------
    # Metric value expressions
    # ------------------------------------------------------------------

    def cap_value(self, cap: float, value: str) -> str:
        if not cap:
            return value
        return f"LEAST({_number(cap)}, {value})"

    def metric_column(self, metric: MetricDefinition, alias: str = "m") -> str:
        # Custom column expressions reference the row alias explicitly
        if _ALIAS_PLACEHOLDER in metric.column:
            return metric.column.replace(_ALIAS_PLACEHOLDER, alias)
        return f"{alias}.{metric.column}"

    def raw_metric_value(self, metric: MetricDefinition, alias: str = "m") -> str:
        """Per-event value selected from the metric table."""
        if metric.type == MetricType.COUNT:
            return self.metric_column(metric, alias) if metric.column else "1"
        if metric.type in (MetricType.DURATION, MetricType.REVENUE):
            return self.metric_column(metric, alias)
        return "1"

    def aggregate_metric_value(self, metric: MetricDefinition, col: str = "m.value") -> str:
        """Per-user aggregate over the events that fall in the conversion window."""
        if metric.type == MetricType.COUNT:
            inner = f"DISTINCT {col}" if metric.column else "*"
            return self.cap_value(metric.cap, f"COUNT({inner})")
        if metric.type in (MetricType.DURATION, MetricType.REVENUE):
            return self.cap_value(metric.cap, f"MAX({col})")
        return "1"

    def metric_conditions(self, metric: MetricDefinition, alias: str = "m") -> str:
        clauses = []
        for c in metric.conditions:
            column = f"{alias}.{c.column}"
            if c.operator in REGEX_OPERATORS:
                match = self.dialect.regex_match(column, c.value)
                clauses.append(match if c.operator == "~" else f"NOT ({match})")
            else:
                clauses.append(f"{column} {c.operator} {quote_literal(c.value)}")
        return " AND ".join(clauses)

    def conversion_window_join(
        self, metric: MetricDefinition, users: str = "d", events: str = "m"
    ) -> str:
        """Join condition keeping events inside each user's conversion window.

        The window is the metric's own: it opens at the user's start (or
        session start) plus the conversion delay and closes
        `conversion_window_hours` after the delayed start.
        """
        start = f"{users}.{'session_start' if metric.early_start else 'actual_start'}"
        end = self.dialect.add_hours(
            f"{users}.actual_start",
            metric.conversion_delay_hours + metric.conversion_window_hours,
        )
        if metric.conversion_delay_hours:
            start = self.dialect.add_hours(start, metric.conversion_delay_hours)
        return (
            f"{events}.user_id = {users}.user_id\n"
            f"      AND {events}.actual_start >= {start}\n"
            f"      AND {events}.actual_start <= {end}"
        )

    # ------------------------------------------------------------------
    # Derived tables
    # ------------------------------------------------------------------

    def page_users_cte(self, params: UsersQueryParams) -> str:
        ts = self.settings.timestamp_column("pageviews")
        user_col = self.settings.id_column(IdType(params.user_id_type).value, "pageviews")
        first_visit = f"MIN({ts})"

        url_filter = ""
        if params.url_regex and params.url_regex != ".*":
            url_filter = "\n      AND " + self.dialect.regex_match(
                self.settings.pageviews.url_column, params.url_regex
            )

        return f"""-- Users visiting specific pages
    SELECT
      {user_col} as user_id,
      {first_visit} as actual_start,
      {self.dialect.add_hours(first_visit, params.conversion_window_hours)} as conversion_end,
      {self.dialect.subtract_minutes(first_visit)} as session_start
    FROM
      {self.dialect.full_table_name(self.settings.pageviews.table)}
    WHERE
      {ts} >= {self.dialect.format_timestamp(date_only(params.date_from))}
      AND {ts} <= {self.dialect.format_timestamp(date_only(params.date_to))}{url_filter}
    GROUP BY
      {user_col}
    """

    def segment_cte(self, segment: SegmentDefinition, id_type: IdType) -> str:
        ident = reconcile(
            id_type, segment.user_id_type, "s", "user_id", "user_id",
            self.settings, self.dialect,
        )
        return f"""-- Segment ({segment.name})
    SELECT
      {ident.column} as user_id,
      s.date
    FROM
      ({segment.sql}) s
      {ident.join}
    """

    def dimension_cte(self, dimension: DimensionDefinition, id_type: IdType) -> str:
        ident = reconcile(
            id_type, dimension.user_id_type, "d", "user_id", "user_id",
            self.settings, self.dialect,
        )
        return f"""-- Dimension ({dimension.name})
    SELECT
      {ident.column} as user_id,
      d.value
    FROM
      ({dimension.sql}) d
      {ident.join}
    """

    def metric_cte(self, metric: MetricDefinition, id_type: IdType) -> str:
        ident = reconcile(
            id_type,
            metric.user_id_type,
            "m",
            self.settings.id_column(IdType(metric.user_id_type).value, metric=metric),
            self.settings.id_column(IdType(id_type).value, metric=metric),
            self.settings,
            self.dialect,
        )
        ts = "m." + self.settings.timestamp_column(metric=metric)
        conditions = self.metric_conditions(metric)
        where = f"WHERE\n      {conditions}" if conditions else ""

        return f"""-- Metric ({metric.name})
    SELECT
      {ident.column} as user_id,
      {self.raw_metric_value(metric)} as value,
      {ts} as actual_start,
      {self.dialect.add_hours(ts, metric.conversion_window_hours)} as conversion_end,
      {self.dialect.subtract_minutes(ts)} as session_start
    FROM
      {self.dialect.full_table_name(metric.table)} m
      {ident.join}
    {where}
    """

    def experiment_cte(
        self, experiment: ExperimentDefinition, phase: ExperimentPhase, id_type: IdType
    ) -> str:
        native = IdType(experiment.user_id_type)
        ident = reconcile(
            id_type,
            native,
            "e",
            self.settings.id_column(native.value, "experiments"),
            self.settings.id_column(IdType(id_type).value, "experiments"),
            self.settings,
            self.dialect,
        )
        ts = "e." + self.settings.timestamp_column("experiments")
        end_filter = ""
        if phase.date_ended:
            end_filter = f"\n      AND {ts} <= {self.dialect.format_timestamp(phase.date_ended)}"

        return f"""-- Viewed Experiment
    SELECT
      {ident.column} as user_id,
      e.{self.settings.variation_column()} as variation,
      {ts} as actual_start,
      {self.dialect.add_hours(ts, experiment.conversion_window_hours)} as conversion_end,
      {self.dialect.subtract_minutes(ts)} as session_start
    FROM
      {self.dialect.full_table_name(self.settings.experiments.table)} e
      {ident.join}
    WHERE
      e.{self.settings.experiment_id_column()} = {quote_literal(experiment.tracking_key)}
      AND {ts} >= {self.dialect.format_timestamp(phase.date_started)}{end_filter}
    """

    def sql_override(
        self,
        experiment: ExperimentDefinition,
        phase: ExperimentPhase,
        key: str,
        now: datetime | None = None,
    ) -> str | None:
        """Raw SQL override for `key` ("users" or a metric id), placeholders filled in."""
        sql = experiment.sql_override.get(key)
        if sql is None:
            return None
        date_end = phase.date_ended or now or datetime.now(timezone.utc)
        replacements = {
            "date_start": self.dialect.format_timestamp(phase.date_started),
            "date_end": self.dialect.format_timestamp(date_end),
            "experiment_key": quote_literal(experiment.tracking_key),
        }
        for name, pattern in _PLACEHOLDERS.items():
            sql = pattern.sub(lambda _m, r=replacements[name]: r, sql)
        return sql

    # ------------------------------------------------------------------
    # Experiment queries
    # ------------------------------------------------------------------

    def _experiment_ctes(
        self,
        experiment: ExperimentDefinition,
        phase: ExperimentPhase,
        activation_metric: MetricDefinition | None,
        dimension: DimensionDefinition | None,
    ) -> list[str]:
        id_type = IdType(experiment.user_id_type)
        ctes = [f"__experiment as ({self.experiment_cte(experiment, phase, id_type)})"]
        if dimension:
            ctes.append(f"__dimension as ({self.dimension_cte(dimension, id_type)})")
        if activation_metric:
            ctes.append(
                f"__activationMetric as ({self.metric_cte(activation_metric, id_type)})"
            )
        return ctes

    @staticmethod
    def _distinct_user_joins(
        activation_metric: MetricDefinition | None,
        dimension: DimensionDefinition | None,
    ) -> str:
        joins = []
        if dimension:
            joins.append("JOIN __dimension d ON (d.user_id = e.user_id)")
        if activation_metric:
            # Activation must happen inside the assignment's own window
            joins.append(
                "JOIN __activationMetric a ON (\n"
                "        a.user_id = e.user_id\n"
                "        AND a.actual_start >= e.actual_start\n"
                "        AND a.actual_start <= e.conversion_end\n"
                "      )"
            )
        return "\n      ".join(joins)

    def experiment_users_query(
        self,
        experiment: ExperimentDefinition,
        phase: ExperimentPhase,
        activation_metric: MetricDefinition | None = None,
        dimension: DimensionDefinition | None = None,
        now: datetime | None = None,
    ) -> str:
        override = self.sql_override(experiment, phase, "users", now)
        if override is not None:
            return override

        ctes = self._experiment_ctes(experiment, phase, activation_metric, dimension)
        ctes.append(f"""__distinctUsers as (
      -- One row per user/dimension/variation
      SELECT
        e.user_id,
        e.variation,
        {"d.value" if dimension else "'All'"} as dimension
      FROM
        __experiment e
        {self._distinct_user_joins(activation_metric, dimension)}
      GROUP BY
        e.variation, e.user_id{", d.value" if dimension else ""}
    )""")

        return f"""-- Number of users in experiment
    WITH
      {_join_ctes(ctes)}
    -- Count of distinct users in experiment per variation/dimension
    SELECT
      variation,
      dimension,
      COUNT(*) as users
    FROM
      __distinctUsers
    GROUP BY
      variation,
      dimension
    """

    def experiment_metric_query(
        self,
        metric: MetricDefinition,
        experiment: ExperimentDefinition,
        phase: ExperimentPhase,
        activation_metric: MetricDefinition | None = None,
        dimension: DimensionDefinition | None = None,
        now: datetime | None = None,
    ) -> str:
        override = self.sql_override(experiment, phase, metric.id, now)
        if override is not None:
            return override

        id_type = IdType(experiment.user_id_type)
        ctes = self._experiment_ctes(experiment, phase, activation_metric, dimension)
        ctes.insert(1, f"__metric as ({self.metric_cte(metric, id_type)})")

        # With an activation metric the window is re-anchored on activation
        src = "a" if activation_metric else "e"
        dim = "d.value" if dimension else "'All'"
        ctes.append(f"""__distinctUsers as (
      -- One row per user/dimension/variation
      SELECT
        e.user_id,
        e.variation,
        {dim} as dimension,
        MIN({src}.actual_start) as actual_start,
        MIN({src}.session_start) as session_start,
        MIN({src}.conversion_end) as conversion_end
      FROM
        __experiment e
        {self._distinct_user_joins(activation_metric, dimension)}
      GROUP BY
        e.variation, e.user_id{", d.value" if dimension else ""}
    )""")
        ctes.append(f"""__userMetric as (
      -- Add in the aggregate metric value for each user
      SELECT
        d.variation,
        d.dimension,
        {self.aggregate_metric_value(metric)} as value
      FROM
        __distinctUsers d
        JOIN __metric m ON (
          {self.conversion_window_join(metric)}
        )
      GROUP BY
        d.variation, d.dimension, d.user_id
    )""")

        return f"""-- {metric.name} ({MetricType(metric.type).value})
    WITH
      {_join_ctes(ctes)}
    -- Sum all user metrics together to get a total per variation/dimension
    SELECT
      variation,
      dimension,
      COUNT(*) as count,
      AVG(value) as mean,
      STDDEV(value) as stddev
    FROM
      __userMetric
    GROUP BY
      variation,
      dimension
    """

    # ------------------------------------------------------------------
    # Exploratory queries
    # ------------------------------------------------------------------

    def users_query(self, params: UsersQueryParams) -> str:
        id_type = IdType(params.user_id_type)
        ctes = [f"__users as ({self.page_users_cte(params)})"]
        segment_join = ""
        if params.segment:
            ctes.append(f"__segment as ({self.segment_cte(params.segment, id_type)})")
            segment_join = (
                "JOIN __segment s ON (s.user_id = u.user_id AND s.date <= u.actual_start)"
            )

        by_date = ""
        if params.include_by_date:
            by_date = f"""
    UNION ALL
    SELECT
      {self.dialect.date_trunc("u.actual_start")} as date,
      COUNT(DISTINCT u.user_id) as users
    FROM
      __users u
      {segment_join}
    GROUP BY
      {self.dialect.date_trunc("u.actual_start")}
    ORDER BY
      date ASC
    """

        return f"""-- {params.name} - Number of Users
    WITH
      {_join_ctes(ctes)}
    SELECT
      {"NULL as date," if params.include_by_date else ""}
      COUNT(DISTINCT u.user_id) as users
    FROM
      __users u
      {segment_join}
    {by_date}
    """

    def _percentile_columns(self, metric: MetricDefinition, column: str | None) -> str:
        """Percentile ladder, or zeroes when `column` is None."""
        if metric.type == MetricType.BINOMIAL:
            return ""
        cols = [
            f"{self.dialect.percentile(column, n) if column else '0'} as {percentile_alias(n)}"
            for n in PERCENTILES
        ]
        return ",\n      " + ",\n      ".join(cols)

    def metric_value_query(self, params: MetricValueParams) -> str:
        metric = params.metric
        id_type = IdType(params.user_id_type)
        ctes = [f"__users as ({self.page_users_cte(params)})"]
        segment_join = ""
        if params.segment:
            ctes.append(f"__segment as ({self.segment_cte(params.segment, id_type)})")
            segment_join = (
                "JOIN __segment s ON (s.user_id = u.user_id AND s.date <= u.actual_start)"
            )
        ctes.append(f"__metric as ({self.metric_cte(metric, id_type)})")
        ctes.append(f"""__distinctUsers as (
      SELECT
        u.user_id,
        MIN(u.conversion_end) as conversion_end,
        MIN(u.session_start) as session_start,
        MIN(u.actual_start) as actual_start
      FROM
        __users u
        {segment_join}
      GROUP BY
        u.user_id
    )""")
        ctes.append(f"""__userMetric as (
      -- Add in the aggregate metric value for each user
      SELECT
        {self.aggregate_metric_value(metric)} as value
      FROM
        __distinctUsers d
        JOIN __metric m ON (
          {self.conversion_window_join(metric)}
        )
      GROUP BY
        d.user_id
    )""")

        by_date = ""
        if params.include_by_date:
            day = self.dialect.date_trunc("d.actual_start")
            ctes.append(f"""__userMetricDates as (
      -- Add in the aggregate metric value for each user and day
      SELECT
        {day} as date,
        {self.aggregate_metric_value(metric)} as value
      FROM
        __distinctUsers d
        JOIN __metric m ON (
          {self.conversion_window_join(metric)}
        )
      GROUP BY
        {day},
        d.user_id
    )""")
            zero_percentiles = (
                self._percentile_columns(metric, None) if params.include_percentiles else ""
            )
            by_date = f"""
    UNION ALL
    SELECT
      date,
      COUNT(*) as count,
      AVG(value) as mean,
      STDDEV(value) as stddev{zero_percentiles}
    FROM
      __userMetricDates
    GROUP BY
      date
    ORDER BY
      date ASC
    """

        percentiles = (
            self._percentile_columns(metric, "value") if params.include_percentiles else ""
        )
        return f"""-- {params.name} - {metric.name} Metric
    WITH
      {_join_ctes(ctes)}
    SELECT
      {"NULL as date," if params.include_by_date else ""}
      COUNT(*) as count,
      AVG(value) as mean,
      STDDEV(value) as stddev{percentiles}
    FROM
      __userMetric
    {by_date}
    """

    def past_experiments_query(self, date_from: datetime) -> str:
        exp_id = self.settings.experiment_id_column()
        variation = self.settings.variation_column()
        ts = self.settings.timestamp_column("experiments")
        day = self.dialect.date_trunc(ts)
        horizon = self.dialect.format_timestamp(date_from)

        return f"""-- Past Experiments
    WITH
      __experimentDates as (
        SELECT
          {exp_id} as experiment_id,
          {variation} as variation_id,
          {day} as date,
          count(distinct {self.settings.anonymous_id_column("experiments")}) as users
        FROM
          {self.dialect.full_table_name(self.settings.experiments.table)}
        WHERE
          {ts} > {horizon}
        GROUP BY
          {exp_id},
          {variation},
          {day}
      ),
      __userThresholds as (
        SELECT
          experiment_id,
          variation_id,
          -- Tracking events trickle in long after an experiment ends,
          -- so only keep days with a reasonable share of the peak traffic
          max(users) * {NOISE_THRESHOLD_RATIO} as threshold
        FROM
          __experimentDates
        WHERE
          -- {MIN_DAILY_USERS} or fewer visitors in a day is not real traffic
          users > {MIN_DAILY_USERS}
        GROUP BY
          experiment_id, variation_id
      ),
      __variations as (
        SELECT
          d.experiment_id,
          d.variation_id,
          MIN(d.date) as start_date,
          MAX(d.date) as end_date,
          SUM(d.users) as users
        FROM
          __experimentDates d
          JOIN __userThresholds u ON (
            d.users > {MIN_DAILY_USERS}
            AND d.users > u.threshold
            AND d.experiment_id = u.experiment_id
            AND d.variation_id = u.variation_id
          )
        GROUP BY
          d.experiment_id, d.variation_id
      )
    SELECT
      *
    FROM
      __variations
    WHERE
      -- Not enough data to be a real experiment
      users > {MIN_TOTAL_USERS}
      -- Most likely stopped early
      AND {self.dialect.date_diff("start_date", "end_date")} > {MIN_DURATION_DAYS}
      -- Started right at the horizon, so earlier data is probably missing
      AND {self.dialect.date_diff(horizon, "start_date")} > {HORIZON_BUFFER_DAYS}
    ORDER BY
      experiment_id ASC, variation_id ASC
    """


def _join_ctes(ctes: list[str]) -> str:
    return "\n      , ".join(ctes)
