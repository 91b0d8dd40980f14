"""Typed results parsed from warehouse rows.

Warehouses hand back every column as text. Numeric fields that are missing
or garbled parse as 0 rather than failing the row.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from dateutil import parser

Row = dict[str, str | None]

_PERCENTILE_COLUMN = re.compile(r"^p(\d+)$")


def to_int(value) -> int:
    """Parse an integer field; truncates decimals, 0 when unparsable."""
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0


def to_float(value) -> float:
    """Parse a float field; 0 when unparsable or not finite."""
    if value is None:
        return 0.0
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.0
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        return 0.0
    return parsed


def to_datetime(value) -> datetime | None:
    """Parse a warehouse timestamp as naive UTC; None when unparsable."""
    if value is None:
        return None
    try:
        parsed = parser.parse(str(value))
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass(frozen=True)
class UsersDate:
    date: str
    users: int


@dataclass
class UsersResult:
    users: int = 0
    dates: list[UsersDate] | None = None


@dataclass(frozen=True)
class MetricValueDate:
    date: str
    count: int
    mean: float
    stddev: float


@dataclass
class MetricValueResult:
    count: int = 0
    mean: float = 0.0
    stddev: float = 0.0
    percentiles: dict[int, float] | None = None
    dates: list[MetricValueDate] | None = None


@dataclass(frozen=True)
class PastExperiment:
    experiment_id: str
    variation_id: str
    start_date: datetime | None
    end_date: datetime | None
    users: int


@dataclass
class PastExperimentResult:
    experiments: list[PastExperiment] = field(default_factory=list)
    query: str = ""


@dataclass(frozen=True)
class VariationMetricResult:
    """Raw moments of one metric for one variation."""

    metric: str
    count: int
    mean: float
    stddev: float


@dataclass
class VariationResult:
    variation: int
    users: int = 0
    metrics: list[VariationMetricResult] = field(default_factory=list)


@dataclass
class DimensionResult:
    dimension: str
    variations: list[VariationResult]


@dataclass
class ExperimentResults:
    results: list[DimensionResult]
    query: str


@dataclass(frozen=True)
class ImpactEstimationResult:
    query: str
    users: float = 0.0
    value: float = 0.0
    metric_total: float = 0.0


def parse_users_rows(rows: list[Row]) -> UsersResult:
    """Overall user count, plus a per-day series for rows carrying a date."""
    result = UsersResult()
    for row in rows:
        date = row.get("date")
        if date:
            if result.dates is None:
                result.dates = []
            result.dates.append(UsersDate(date=str(date), users=to_int(row.get("users"))))
        else:
            result.users = to_int(row.get("users"))
    return result


def parse_metric_value_rows(rows: list[Row]) -> MetricValueResult:
    """Overall count/mean/stddev and percentiles, plus a per-day series."""
    result = MetricValueResult()
    for row in rows:
        date = row.get("date")
        if date:
            if result.dates is None:
                result.dates = []
            result.dates.append(
                MetricValueDate(
                    date=str(date),
                    count=to_int(row.get("count")),
                    mean=to_float(row.get("mean")),
                    stddev=to_float(row.get("stddev")),
                )
            )
            continue

        result.count = to_int(row.get("count"))
        result.mean = to_float(row.get("mean"))
        result.stddev = to_float(row.get("stddev"))
        for column, value in row.items():
            match = _PERCENTILE_COLUMN.match(column)
            if match:
                if result.percentiles is None:
                    result.percentiles = {}
                result.percentiles[int(match.group(1))] = to_float(value)
    return result


def parse_past_experiment_rows(rows: list[Row]) -> list[PastExperiment]:
    return [
        PastExperiment(
            experiment_id=str(row.get("experiment_id")),
            variation_id=str(row.get("variation_id")),
            start_date=to_datetime(row.get("start_date")),
            end_date=to_datetime(row.get("end_date")),
            users=to_int(row.get("users")),
        )
        for row in rows
    ]
