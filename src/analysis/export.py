"""Export analysis results as JSON.

Writes experiment results (and the SQL that produced them) to a single
JSON file for downstream statistics and dashboards.
"""

import json
import logging
from dataclasses import asdict
from pathlib import Path

from src.analysis.results import ExperimentResults

logger = logging.getLogger(__name__)


def results_to_dict(results: ExperimentResults, metric_names: dict[str, str] | None = None) -> dict:
    """Plain-dict form of experiment results, metric ids annotated with names."""
    metric_names = metric_names or {}
    data = asdict(results)
    for dimension in data["results"]:
        for variation in dimension["variations"]:
            for metric in variation["metrics"]:
                metric["name"] = metric_names.get(metric["metric"], metric["metric"])
    return data


def export_results(
    results: ExperimentResults,
    output_path: str,
    metric_names: dict[str, str] | None = None,
) -> dict:
    """Write experiment results to `output_path` as JSON."""
    data = results_to_dict(results, metric_names)

    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(data, indent=2, default=str))
    logger.info("Experiment results exported to %s", output_path)
    return data
