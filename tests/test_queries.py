"""Tests for SQL composition. Nothing here touches a warehouse."""

from datetime import datetime

import pytest
import sqlglot

from src.analysis.queries import (
    PERCENTILES,
    QueryComposer,
    join_queries,
    percentile_alias,
)
from src.analysis.schemas import (
    DimensionDefinition,
    ExperimentDefinition,
    ExperimentPhase,
    MetricDefinition,
    MetricValueParams,
    SegmentDefinition,
    UsersQueryParams,
)
from src.warehouse.dialects import (
    BigQueryDialect,
    Dialect,
    DuckDBDialect,
    PrestoDialect,
    SnowflakeDialect,
)
from src.warehouse.settings import resolve_settings


@pytest.fixture
def composer():
    return QueryComposer(resolve_settings(), Dialect())


def _metric(**overrides):
    fields = {"id": "met_1", "name": "Metric", "type": "count", "table": "events"}
    fields.update(overrides)
    return MetricDefinition(**fields)


def _experiment(**overrides):
    fields = {
        "id": "exp_1",
        "tracking_key": "checkout-test",
        "user_id_type": "anonymous",
        "variations": ["control", "treatment"],
        "phases": [{"date_started": "2021-01-01T00:00:00"}],
    }
    fields.update(overrides)
    return ExperimentDefinition(**fields)


PHASE = ExperimentPhase(
    date_started=datetime(2021, 1, 1), date_ended=datetime(2021, 1, 31, 12, 0)
)
OPEN_PHASE = ExperimentPhase(date_started=datetime(2021, 1, 1))
NOW = datetime(2021, 2, 15, 8, 30)


class TestMetricValues:
    @pytest.mark.parametrize(
        "metric_type,column,expected",
        [
            ("binomial", None, "1"),
            ("count", None, "1"),
            ("count", "quantity", "m.quantity"),
            ("duration", "seconds", "m.seconds"),
            ("revenue", "amount", "m.amount"),
        ],
    )
    def test_raw_value(self, composer, metric_type, column, expected):
        metric = _metric(type=metric_type, column=column)
        assert composer.raw_metric_value(metric) == expected

    def test_alias_placeholder_substituted(self, composer):
        metric = _metric(type="duration", column="{alias}.ended_at - {alias}.started_at")
        assert composer.raw_metric_value(metric, "x") == "x.ended_at - x.started_at"

    @pytest.mark.parametrize(
        "metric_type,column,expected",
        [
            ("binomial", None, "1"),
            ("count", None, "COUNT(*)"),
            ("count", "order_id", "COUNT(DISTINCT m.value)"),
            ("revenue", "amount", "MAX(m.value)"),
        ],
    )
    def test_aggregate_value(self, composer, metric_type, column, expected):
        metric = _metric(type=metric_type, column=column)
        assert composer.aggregate_metric_value(metric) == expected

    def test_cap_clamps_with_least(self, composer):
        metric = _metric(type="revenue", column="amount", cap=100)
        assert composer.aggregate_metric_value(metric) == "LEAST(100, MAX(m.value))"

    def test_fractional_cap(self, composer):
        assert composer.cap_value(2.5, "MAX(m.value)") == "LEAST(2.5, MAX(m.value))"

    def test_binomial_ignores_cap(self, composer):
        metric = _metric(type="binomial", cap=10)
        assert composer.aggregate_metric_value(metric) == "1"


class TestConditions:
    def test_comparison_conditions(self, composer):
        metric = _metric(conditions=[
            {"column": "status", "operator": "=", "value": "paid"},
            {"column": "amount", "operator": ">=", "value": 10},
        ])
        assert composer.metric_conditions(metric) == "m.status = 'paid' AND m.amount >= '10'"

    def test_literal_quotes_escaped(self, composer):
        metric = _metric(conditions=[{"column": "name", "operator": "!=", "value": "o'brien"}])
        assert composer.metric_conditions(metric) == "m.name != 'o''brien'"

    @pytest.mark.parametrize(
        "dialect,match",
        [
            (Dialect(), "m.path ~ '^/cart'"),
            (BigQueryDialect(), "REGEXP_CONTAINS(m.path, '^/cart')"),
            (PrestoDialect(), "regexp_like(m.path, '^/cart')"),
        ],
    )
    def test_regex_conditions_use_dialect(self, dialect, match):
        composer = QueryComposer(resolve_settings(), dialect)
        metric = _metric(conditions=[
            {"column": "path", "operator": "~", "value": "^/cart"},
            {"column": "path", "operator": "!~", "value": "^/cart"},
        ])
        assert composer.metric_conditions(metric) == f"{match} AND NOT ({match})"

    def test_no_conditions_no_where(self, composer):
        assert "WHERE" not in composer.metric_cte(_metric(), "user")


class TestConversionWindow:
    def test_default_window(self, composer):
        join = composer.conversion_window_join(_metric())
        assert "m.actual_start >= d.actual_start" in join
        assert "m.actual_start <= d.actual_start + INTERVAL '72 hours'" in join

    def test_metric_window_bounds_the_join(self, composer):
        join = composer.conversion_window_join(_metric(conversion_window_hours=1))
        assert "m.actual_start <= d.actual_start + INTERVAL '1 hours'" in join
        assert "d.conversion_end" not in join

    def test_early_start_uses_session(self, composer):
        join = composer.conversion_window_join(_metric(early_start=True))
        assert "m.actual_start >= d.session_start" in join

    def test_delay_shifts_both_bounds(self, composer):
        join = composer.conversion_window_join(_metric(conversion_delay_hours=2))
        assert "m.actual_start >= d.actual_start + INTERVAL '2 hours'" in join
        assert "m.actual_start <= d.actual_start + INTERVAL '74 hours'" in join

    def test_metric_window_drives_metric_table(self, composer):
        sql = composer.metric_cte(_metric(conversion_window_hours=24), "user")
        assert "m.received_at + INTERVAL '24 hours' as conversion_end" in sql

    def test_experiment_window_drives_experiment_table(self, composer):
        sql = composer.experiment_cte(_experiment(conversion_window_hours=48), PHASE, "anonymous")
        assert "e.received_at + INTERVAL '48 hours' as conversion_end" in sql
        assert "e.received_at - INTERVAL '30 minutes' as session_start" in sql


class TestIdentityJoin:
    def test_same_id_space_has_no_join(self, composer):
        sql = composer.metric_cte(_metric(user_id_type="anonymous"), "anonymous")
        assert "m.anonymous_id as user_id" in sql
        assert "identifies" not in sql

    def test_bridged_through_identifies(self, composer):
        sql = composer.metric_cte(_metric(user_id_type="user"), "anonymous")
        assert sql.count("JOIN identifies i") == 1
        assert "i.anonymous_id as user_id" in sql
        assert "i.user_id = m.user_id" in sql

    def test_metric_column_overrides(self, composer):
        metric = _metric(user_id_type="user", user_id_column="customer_id")
        sql = composer.metric_cte(metric, "anonymous")
        assert "i.user_id = m.customer_id" in sql

    def test_experiment_bridged(self, composer):
        sql = composer.experiment_cte(_experiment(user_id_type="anonymous"), PHASE, "user")
        assert "i.user_id as user_id" in sql
        assert "i.anonymous_id = e.anonymous_id" in sql

    def test_identifies_table_setting(self):
        settings = resolve_settings({"identifies": {"table": "id_map"}})
        composer = QueryComposer(settings, Dialect())
        sql = composer.segment_cte(
            SegmentDefinition(name="s", sql="SELECT 1", user_id_type="user"), "anonymous"
        )
        assert "JOIN id_map i" in sql


class TestExperimentQueries:
    def test_phase_bounds(self, composer):
        sql = composer.experiment_users_query(_experiment(), PHASE)
        assert "e.received_at >= '2021-01-01 00:00:00'" in sql
        assert "e.received_at <= '2021-01-31 12:00:00'" in sql
        assert "e.experiment_id = 'checkout-test'" in sql

    def test_open_phase_has_no_upper_bound(self, composer):
        sql = composer.experiment_users_query(_experiment(), OPEN_PHASE)
        assert "e.received_at <=" not in sql

    def test_custom_tracking_columns(self):
        settings = resolve_settings({
            "experiments": {
                "table": "viewed_experiment",
                "experiment_id_column": "exp_key",
                "variation_column": "variant",
                "timestamp_column": "viewed_at",
            }
        })
        sql = QueryComposer(settings, Dialect()).experiment_users_query(_experiment(), PHASE)
        assert "FROM\n      viewed_experiment e" in sql
        assert "e.variant as variation" in sql
        assert "e.exp_key = 'checkout-test'" in sql
        assert "e.viewed_at >= " in sql

    def test_users_query_without_dimension(self, composer):
        sql = composer.experiment_users_query(_experiment(), PHASE)
        assert "'All' as dimension" in sql
        assert "__dimension" not in sql
        assert "__activationMetric" not in sql

    def test_users_query_with_dimension_and_activation(self, composer):
        dimension = DimensionDefinition(name="browser", sql="SELECT user_id, value FROM b")
        activation = _metric(id="act", name="Activated", type="binomial")
        sql = composer.experiment_users_query(_experiment(), PHASE, activation, dimension)
        assert "d.value as dimension" in sql
        assert "JOIN __dimension d ON (d.user_id = e.user_id)" in sql
        assert "JOIN __activationMetric a ON" in sql
        assert "GROUP BY\n        e.variation, e.user_id, d.value" in sql

    def test_metric_query_reanchors_on_activation(self, composer):
        activation = _metric(id="act", name="Activated", type="binomial")
        metric = _metric(type="revenue", column="amount")
        with_act = composer.experiment_metric_query(metric, _experiment(), PHASE, activation)
        without = composer.experiment_metric_query(metric, _experiment(), PHASE)
        assert "MIN(a.actual_start) as actual_start" in with_act
        assert "MIN(e.actual_start) as actual_start" in without

    def test_metric_query_shape(self, composer):
        metric = _metric(name="Orders", type="count")
        sql = composer.experiment_metric_query(metric, _experiment(), PHASE)
        assert sql.lstrip().startswith("-- Orders (count)")
        for column in ("COUNT(*) as count", "AVG(value) as mean", "STDDEV(value) as stddev"):
            assert column in sql
        assert sql.index("__experiment as") < sql.index("__metric as")

    @pytest.mark.parametrize(
        "dialect", [Dialect(), SnowflakeDialect(), BigQueryDialect(), PrestoDialect(), DuckDBDialect()],
        ids=lambda d: d.name,
    )
    def test_queries_parse_in_their_dialect(self, dialect):
        composer = QueryComposer(resolve_settings(), dialect)
        metric = _metric(type="revenue", column="amount", cap=50, user_id_type="user",
                         conditions=[{"column": "path", "operator": "~", "value": "^/cart"}])
        dimension = DimensionDefinition(name="browser", sql="SELECT user_id, value FROM b")
        for sql in (
            composer.experiment_metric_query(metric, _experiment(), PHASE, dimension=dimension),
            composer.experiment_users_query(_experiment(), PHASE, metric, dimension),
        ):
            assert sqlglot.parse(sql, read=dialect.sqlglot_dialect)


class TestSqlOverride:
    def test_placeholders_substituted(self, composer):
        experiment = _experiment(sql_override={
            "users": "SELECT * FROM t WHERE k = {{ experimentKey }} "
                     "AND ts BETWEEN {{dateStart}} AND {{  dateEnd }}",
        })
        sql = composer.experiment_users_query(experiment, PHASE)
        assert sql == (
            "SELECT * FROM t WHERE k = 'checkout-test' "
            "AND ts BETWEEN '2021-01-01 00:00:00' AND '2021-01-31 12:00:00'"
        )

    def test_open_phase_ends_now(self, composer):
        experiment = _experiment(sql_override={"met_1": "SELECT {{dateEnd}}"})
        sql = composer.experiment_metric_query(_metric(), experiment, OPEN_PHASE, now=NOW)
        assert sql == "SELECT '2021-02-15 08:30:00'"

    def test_override_only_for_its_key(self, composer):
        experiment = _experiment(sql_override={"other_metric": "SELECT 1"})
        sql = composer.experiment_metric_query(_metric(), experiment, PHASE)
        assert "WITH" in sql

    def test_key_with_quote_escaped(self, composer):
        experiment = _experiment(
            tracking_key="it's", sql_override={"users": "{{experimentKey}}"}
        )
        assert composer.experiment_users_query(experiment, PHASE) == "'it''s'"


class TestExploratoryQueries:
    def _params(self, **overrides):
        fields = {
            "name": "Traffic",
            "date_from": datetime(2021, 2, 1, 15, 0),
            "date_to": datetime(2021, 2, 10, 9, 0),
        }
        fields.update(overrides)
        return fields

    def test_dates_truncated_to_day(self, composer):
        sql = composer.users_query(UsersQueryParams(**self._params()))
        assert "received_at >= '2021-02-01 00:00:00'" in sql
        assert "received_at <= '2021-02-10 00:00:00'" in sql

    def test_url_filter(self, composer):
        sql = composer.users_query(UsersQueryParams(**self._params(url_regex="^/pricing")))
        assert "path ~ '^/pricing'" in sql

    @pytest.mark.parametrize("url_regex", [None, "", ".*"])
    def test_match_all_url_adds_no_filter(self, composer, url_regex):
        sql = composer.users_query(UsersQueryParams(**self._params(url_regex=url_regex)))
        assert "path ~" not in sql

    def test_users_by_date(self, composer):
        sql = composer.users_query(UsersQueryParams(**self._params(include_by_date=True)))
        assert "NULL as date" in sql
        assert "UNION ALL" in sql
        assert "date_trunc('day', u.actual_start)" in sql

    def test_segment_join(self, composer):
        segment = SegmentDefinition(name="Pro", sql="SELECT user_id, date FROM pro")
        sql = composer.users_query(UsersQueryParams(**self._params(segment=segment)))
        assert "__segment as (" in sql
        assert "s.date <= u.actual_start" in sql

    def test_percentile_ladder(self, composer):
        metric = _metric(type="duration", column="seconds")
        sql = composer.metric_value_query(MetricValueParams(metric=metric, **self._params()))
        for n in PERCENTILES:
            assert f"as {percentile_alias(n)}" in sql
        assert "PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY value) as p50" in sql

    def test_binomial_has_no_percentiles(self, composer):
        metric = _metric(type="binomial")
        sql = composer.metric_value_query(MetricValueParams(metric=metric, **self._params()))
        assert "p50" not in sql

    def test_percentiles_can_be_skipped(self, composer):
        metric = _metric(type="revenue", column="amount")
        sql = composer.metric_value_query(
            MetricValueParams(metric=metric, include_percentiles=False, **self._params())
        )
        assert "PERCENTILE_CONT" not in sql

    def test_dated_rows_carry_zero_percentiles(self, composer):
        metric = _metric(type="revenue", column="amount")
        sql = composer.metric_value_query(
            MetricValueParams(metric=metric, include_by_date=True, **self._params())
        )
        by_date = sql[sql.index("UNION ALL"):]
        assert "0 as p50" in by_date
        assert "PERCENTILE_CONT" not in by_date

    def test_percentile_aliases(self):
        assert [percentile_alias(n) for n in (0.01, 0.05, 0.1, 0.95, 0.99)] == [
            "p1", "p5", "p10", "p95", "p99"
        ]


class TestPastExperimentsQuery:
    def test_thresholds(self, composer):
        sql = composer.past_experiments_query(datetime(2021, 3, 1))
        assert "received_at > '2021-03-01 00:00:00'" in sql
        assert "max(users) * 0.05 as threshold" in sql
        assert "users > 200" in sql
        assert "(CAST(end_date AS DATE) - CAST(start_date AS DATE)) > 5" in sql
        assert "(CAST(start_date AS DATE) - CAST('2021-03-01 00:00:00' AS DATE)) > 2" in sql
        assert "count(distinct anonymous_id)" in sql


class TestJoinQueries:
    def test_statements_separated(self):
        combined = join_queries(["select 1", "select 2"])
        assert combined.endswith(";")
        assert combined.count(";") == 2
        assert combined.index("1") < combined.index("2")
