"""Definitions consumed by the query composer.

These are built per request from configuration owned by the caller
(metrics, experiments, dimensions, segments) and validated on construction.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class MetricType(str, Enum):
    BINOMIAL = "binomial"
    COUNT = "count"
    DURATION = "duration"
    REVENUE = "revenue"


class IdType(str, Enum):
    USER = "user"
    ANONYMOUS = "anonymous"


# Operators rendered through the dialect's regex predicate
REGEX_OPERATORS = {"~", "!~"}
COMPARISON_OPERATORS = {"=", "!=", "<>", "<", ">", "<=", ">="}


class MetricCondition(BaseModel):
    """A `column operator 'value'` filter on the metric's source table."""

    column: str
    operator: str
    value: str

    @field_validator("operator")
    @classmethod
    def operator_supported(cls, v: str) -> str:
        v = v.strip()
        if v not in COMPARISON_OPERATORS | REGEX_OPERATORS:
            raise ValueError(f"unsupported condition operator: {v!r}")
        return v

    @field_validator("value", mode="before")
    @classmethod
    def value_as_text(cls, v) -> str:
        return str(v)


class MetricDefinition(BaseModel):
    """A metric tracked in a warehouse table."""

    id: str
    name: str
    type: MetricType
    table: str
    column: str | None = None
    conditions: list[MetricCondition] = Field(default_factory=list)
    user_id_type: IdType = IdType.USER
    user_id_column: str | None = None
    anonymous_id_column: str | None = None
    timestamp_column: str | None = None
    cap: float = 0
    conversion_delay_hours: int = 0
    conversion_window_hours: int = 72
    early_start: bool = False
    ignore_nulls: bool = False

    @field_validator("cap")
    @classmethod
    def cap_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("cap must be >= 0")
        return v

    @field_validator("conversion_window_hours")
    @classmethod
    def window_not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("conversion_window_hours must be >= 0")
        return v

    @model_validator(mode="after")
    def value_column_required(self) -> "MetricDefinition":
        if self.type in (MetricType.DURATION, MetricType.REVENUE) and not self.column:
            raise ValueError(f"{self.type.value} metrics need a value column")
        return self


class Variation(BaseModel):
    key: str
    name: str = ""


class ExperimentPhase(BaseModel):
    date_started: datetime
    date_ended: datetime | None = None


class ExperimentDefinition(BaseModel):
    """An experiment as seen by the assignment-tracking table."""

    id: str
    tracking_key: str
    user_id_type: IdType = IdType.ANONYMOUS
    variations: list[Variation] = Field(..., min_length=1)
    phases: list[ExperimentPhase] = Field(default_factory=list)
    conversion_window_hours: int = 72
    sql_override: dict[str, str] = Field(default_factory=dict)

    @field_validator("conversion_window_hours")
    @classmethod
    def window_not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("conversion_window_hours must be >= 0")
        return v

    @field_validator("variations", mode="before")
    @classmethod
    def variations_from_keys(cls, v):
        # Accept a bare list of keys as shorthand
        if isinstance(v, list):
            return [{"key": str(x)} if isinstance(x, (str, int)) else x for x in v]
        return v

    def variation_key_map(self) -> dict[str, int]:
        return {v.key: i for i, v in enumerate(self.variations)}


class DimensionDefinition(BaseModel):
    """SQL yielding `user_id` and `value` columns."""

    name: str
    sql: str
    user_id_type: IdType = IdType.USER


class SegmentDefinition(BaseModel):
    """SQL yielding `user_id` and `date` columns; users are in the segment from `date` on."""

    name: str
    sql: str
    user_id_type: IdType = IdType.USER


class UsersQueryParams(BaseModel):
    name: str
    date_from: datetime
    date_to: datetime
    url_regex: str | None = None
    segment: SegmentDefinition | None = None
    user_id_type: IdType = IdType.USER
    conversion_window_hours: int = 72
    include_by_date: bool = False


class MetricValueParams(UsersQueryParams):
    metric: MetricDefinition
    include_percentiles: bool = True
