"""CLI entrypoint: run experiment analysis against the warehouse.

Reads an analysis config (experiment, metrics, source settings) from a JSON
file, runs the queries against a DuckDB warehouse and prints a report.

Usage:
    python -m src.analysis.run experiment --config analysis.json
    python -m src.analysis.run experiment --config analysis.json --out results.json
    python -m src.analysis.run past-experiments --days 90
    python -m src.analysis.run impact --config analysis.json --metric purchases --url-regex '^/pricing'
"""

import argparse
import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from src.analysis.experiment import WarehouseIntegration
from src.analysis.export import export_results
from src.analysis.impact import estimate_impact
from src.analysis.results import ExperimentResults, ImpactEstimationResult, PastExperimentResult
from src.analysis.schemas import (
    DimensionDefinition,
    ExperimentDefinition,
    MetricDefinition,
    SegmentDefinition,
)
from src.config import Settings, get_settings
from src.logging_config import configure_logging
from src.warehouse.db import DuckDBRunner, get_connection, init_db
from src.warehouse.dialects import get_dialect


def load_config(path: str | None) -> dict:
    if not path:
        return {}
    return json.loads(Path(path).read_text())


def build_integration(conn, config: dict, settings: Settings) -> WarehouseIntegration:
    dialect = get_dialect(
        config.get("dialect", settings.dialect),
        project=settings.bigquery_project,
        dataset=settings.bigquery_dataset,
    )
    runner = DuckDBRunner(conn, timeout=settings.query_timeout_seconds)
    return WarehouseIntegration(runner, dialect, config.get("source_settings"))


def format_report(
    experiment: ExperimentDefinition,
    metrics: list[MetricDefinition],
    results: ExperimentResults,
) -> str:
    """Format experiment results as a human-readable report."""
    names = {m.id: m.name for m in metrics}
    lines = [
        f"{'=' * 60}",
        f"EXPERIMENT: {experiment.tracking_key}",
        f"{'=' * 60}",
    ]
    if not results.results:
        lines.append("  No data")
    for dimension in results.results:
        lines.append("")
        lines.append(f"DIMENSION: {dimension.dimension}")
        for v in dimension.variations:
            key = experiment.variations[v.variation].key
            lines.append(f"  Variation {v.variation} ({key}): {v.users} users")
            for m in v.metrics:
                lines.append(
                    f"    {names.get(m.metric, m.metric):<24} "
                    f"count={m.count:<8} mean={m.mean:<12.4f} stddev={m.stddev:.4f}"
                )
    lines.append(f"{'=' * 60}")
    return "\n".join(lines)


def format_past_experiments(result: PastExperimentResult) -> str:
    if not result.experiments:
        return "No past experiments found."
    lines = [f"{'EXPERIMENT':<24} {'VARIATION':<12} {'START':<12} {'END':<12} USERS"]
    for e in result.experiments:
        start = e.start_date.date().isoformat() if e.start_date else "?"
        end = e.end_date.date().isoformat() if e.end_date else "?"
        lines.append(
            f"{e.experiment_id:<24} {e.variation_id:<12} {start:<12} {end:<12} {e.users}"
        )
    return "\n".join(lines)


def format_impact(metric: MetricDefinition, result: ImpactEstimationResult) -> str:
    return "\n".join([
        f"IMPACT ESTIMATE: {metric.name}",
        f"  Daily users on selected pages:   {result.users:.1f}",
        f"  Daily metric value (pages):      {result.value:.2f}",
        f"  Daily metric value (site-wide):  {result.metric_total:.2f}",
    ])


def parse_experiment_config(config: dict):
    """Experiment, phase, metrics, activation metric and dimension from a config."""
    experiment = ExperimentDefinition.model_validate(config["experiment"])
    if not experiment.phases:
        raise ValueError(f"Experiment {experiment.tracking_key} has no phases")
    phase = experiment.phases[config.get("phase", -1)]
    metrics = [MetricDefinition.model_validate(m) for m in config.get("metrics", [])]

    activation_metric = None
    if config.get("activation_metric"):
        activation_metric = MetricDefinition.model_validate(config["activation_metric"])
    dimension = None
    if config.get("dimension"):
        dimension = DimensionDefinition.model_validate(config["dimension"])

    return experiment, phase, metrics, activation_metric, dimension


def main(args: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run experiment analysis")
    parser.add_argument("--db", type=str, default=None, help="Database path")
    parser.add_argument("--show-sql", action="store_true", help="Print the SQL that was run")
    sub = parser.add_subparsers(dest="command", required=True)

    exp = sub.add_parser("experiment", help="Analyze one experiment")
    exp.add_argument("--config", required=True, help="Analysis config JSON")
    exp.add_argument("--out", default=None, help="Write results JSON here")

    past = sub.add_parser("past-experiments", help="Discover experiments in the tracking table")
    past.add_argument("--config", default=None, help="Config JSON with source settings")
    past.add_argument("--days", type=int, default=365, help="How far back to look")

    impact = sub.add_parser("impact", help="Estimate impact of a hypothetical experiment")
    impact.add_argument("--config", required=True, help="Config JSON with metrics")
    impact.add_argument("--metric", required=True, help="Metric id from the config")
    impact.add_argument("--url-regex", default=".*", help="Pages the experiment would run on")

    opts = parser.parse_args(args)
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    config = load_config(opts.config)
    conn = get_connection(opts.db or settings.db_path)
    init_db(conn)
    integration = build_integration(conn, config, settings)

    try:
        if opts.command == "experiment":
            experiment, phase, metrics, activation_metric, dimension = parse_experiment_config(config)
            results = asyncio.run(
                integration.get_experiment_results(
                    experiment, phase, metrics, activation_metric, dimension
                )
            )
            print(format_report(experiment, metrics, results))
            if opts.out:
                export_results(results, opts.out, {m.id: m.name for m in metrics})
            query = results.query
        elif opts.command == "past-experiments":
            since = datetime.now(timezone.utc) - timedelta(days=opts.days)
            past_result = asyncio.run(integration.get_past_experiments(since))
            print(format_past_experiments(past_result))
            query = past_result.query
        else:
            metrics = {m["id"]: m for m in config.get("metrics", [])}
            if opts.metric not in metrics:
                parser.error(f"unknown metric {opts.metric!r}")
            metric = MetricDefinition.model_validate(metrics[opts.metric])
            segment = None
            if config.get("segment"):
                segment = SegmentDefinition.model_validate(config["segment"])
            impact_result = asyncio.run(
                estimate_impact(integration, opts.url_regex, metric, segment)
            )
            print(format_impact(metric, impact_result))
            query = impact_result.query
    finally:
        conn.close()

    if opts.show_sql:
        print()
        print(query)


if __name__ == "__main__":
    main()
