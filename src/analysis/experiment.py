"""Experiment analysis against a SQL warehouse.

`WarehouseIntegration` ties a source's settings and dialect to a query
runner. It composes the queries, runs them concurrently and folds the text
rows into typed results.

Concurrent queries are all-or-nothing: if any one fails, the rest are
cancelled and the original exception propagates. Results from the branches
are merged only after every branch has finished, keyed by dimension value
and variation index, so completion order never matters.
"""

import asyncio
import logging
from datetime import datetime

from src.analysis.queries import QueryComposer, join_queries
from src.analysis.results import (
    DimensionResult,
    ExperimentResults,
    MetricValueResult,
    PastExperimentResult,
    Row,
    UsersResult,
    VariationMetricResult,
    VariationResult,
    parse_metric_value_rows,
    parse_past_experiment_rows,
    parse_users_rows,
    to_float,
    to_int,
)
from src.analysis.schemas import (
    DimensionDefinition,
    ExperimentDefinition,
    ExperimentPhase,
    MetricDefinition,
)
from src.warehouse.db import QueryRunner
from src.warehouse.dialects import Dialect
from src.warehouse.settings import SourceSettings, resolve_settings

logger = logging.getLogger(__name__)


async def gather_all(*aws):
    """Await every awaitable; on the first failure cancel the rest and re-raise."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        # Drain so no sibling exception goes unretrieved
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def resolve_variation(
    value: str | None,
    variation_format: str,
    key_map: dict[str, int],
    num_variations: int,
) -> int | None:
    """Variation index for a raw value, or None when it can't be placed."""
    if value is None:
        return None
    if variation_format == "key":
        index = key_map.get(str(value))
    else:
        try:
            index = int(str(value).strip())
        except ValueError:
            index = None
    if index is None or index < 0 or index >= num_variations:
        return None
    return index


class WarehouseIntegration:
    """Runs analysis queries for one data source."""

    def __init__(
        self,
        runner: QueryRunner,
        dialect: Dialect,
        settings: SourceSettings | dict | None = None,
    ):
        if not isinstance(settings, SourceSettings):
            settings = resolve_settings(settings)
        self.runner = runner
        self.dialect = dialect
        self.settings = settings
        self.composer = QueryComposer(settings, dialect)

    @property
    def source_properties(self) -> dict:
        return self.dialect.properties

    async def test_connection(self) -> bool:
        await self.runner.run("select 1")
        return True

    async def run_all(self, queries: list[str]) -> list[list[Row]]:
        logger.debug("Running %d queries concurrently", len(queries))
        return await gather_all(*(self.runner.run(sql) for sql in queries))

    async def run_users_query(self, sql: str) -> UsersResult:
        return parse_users_rows(await self.runner.run(sql))

    async def run_metric_value_query(self, sql: str) -> MetricValueResult:
        return parse_metric_value_rows(await self.runner.run(sql))

    async def get_past_experiments(self, date_from: datetime) -> PastExperimentResult:
        """Discover experiments that ran since `date_from`."""
        sql = self.composer.past_experiments_query(date_from)
        rows = await self.runner.run(sql)
        experiments = parse_past_experiment_rows(rows)
        logger.info("Found %d past experiment variations since %s", len(experiments), date_from)
        return PastExperimentResult(experiments=experiments, query=join_queries([sql]))

    async def get_experiment_results(
        self,
        experiment: ExperimentDefinition,
        phase: ExperimentPhase,
        metrics: list[MetricDefinition],
        activation_metric: MetricDefinition | None = None,
        dimension: DimensionDefinition | None = None,
        now: datetime | None = None,
    ) -> ExperimentResults:
        """Per-dimension, per-variation users and metric moments for an experiment."""
        metric_sqls = [
            self.composer.experiment_metric_query(
                m, experiment, phase, activation_metric, dimension, now
            )
            for m in metrics
        ]
        users_sql = self.composer.experiment_users_query(
            experiment, phase, activation_metric, dimension, now
        )

        logger.info(
            "Analyzing experiment %s: %d metrics%s",
            experiment.tracking_key,
            len(metrics),
            f" by {dimension.name}" if dimension else "",
        )
        *metric_rows, users_rows = await self.run_all(metric_sqls + [users_sql])

        merged = self._merge(experiment, metrics, metric_rows, users_rows)
        return ExperimentResults(
            results=[
                DimensionResult(dimension=key, variations=variations)
                for key, variations in merged.items()
            ],
            query=join_queries(metric_sqls + [users_sql]),
        )

    def _merge(
        self,
        experiment: ExperimentDefinition,
        metrics: list[MetricDefinition],
        metric_rows: list[list[Row]],
        users_rows: list[Row],
    ) -> dict[str, list[VariationResult]]:
        key_map = experiment.variation_key_map()
        variation_format = self.settings.experiments.variation_format
        num_variations = len(experiment.variations)
        buckets: dict[str, list[VariationResult]] = {}

        def bucket(row: Row) -> VariationResult | None:
            index = resolve_variation(
                row.get("variation"), variation_format, key_map, num_variations
            )
            if index is None:
                logger.warning(
                    "Unexpected variation %r in experiment %s",
                    row.get("variation"),
                    experiment.tracking_key,
                )
                return None
            dimension = row.get("dimension")
            key = "" if dimension is None else str(dimension)
            if key not in buckets:
                buckets[key] = [VariationResult(variation=i) for i in range(num_variations)]
            return buckets[key][index]

        for row in users_rows:
            data = bucket(row)
            if data is not None:
                data.users = to_int(row.get("users"))

        for metric, rows in zip(metrics, metric_rows):
            for row in rows:
                data = bucket(row)
                if data is None:
                    continue
                data.metrics.append(
                    VariationMetricResult(
                        metric=metric.id,
                        count=to_int(row.get("count")),
                        mean=to_float(row.get("mean")),
                        stddev=to_float(row.get("stddev")),
                    )
                )
        return buckets
