"""Per-source table and column settings.

A data source describes where its tracking tables live and what their
columns are called. Whatever the source leaves out is filled from the
section models' defaults exactly once, in `resolve_settings`; the resulting
`SourceSettings` is frozen and shared by every query against that source.
"""

from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from src.analysis.schemas import MetricDefinition

Section = Literal["default", "experiments", "users", "pageviews", "identifies"]

# Last-resort column names when neither the metric, the section nor the
# default section names one
FALLBACK_USER_ID_COLUMN = "user_id"
FALLBACK_ANONYMOUS_ID_COLUMN = "anonymous_id"
FALLBACK_TIMESTAMP_COLUMN = "received_at"


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    timestamp_column: str | None = None
    user_id_column: str | None = None
    anonymous_id_column: str | None = None


class DefaultSection(_Section):
    timestamp_column: str = FALLBACK_TIMESTAMP_COLUMN
    user_id_column: str = FALLBACK_USER_ID_COLUMN
    anonymous_id_column: str = FALLBACK_ANONYMOUS_ID_COLUMN


class ExperimentsSection(_Section):
    table: str = "experiment_viewed"
    experiment_id_column: str = "experiment_id"
    variation_column: str = "variation_id"
    variation_format: Literal["index", "key"] = "index"


class UsersSection(_Section):
    table: str = "users"


class PageviewsSection(_Section):
    table: str = "pages"
    url_column: str = "path"


class IdentifiesSection(_Section):
    table: str = "identifies"


class SourceSettings(BaseModel):
    """Resolved, read-only settings for one data source."""

    model_config = ConfigDict(frozen=True)

    default: DefaultSection = DefaultSection()
    experiments: ExperimentsSection = ExperimentsSection()
    users: UsersSection = UsersSection()
    pageviews: PageviewsSection = PageviewsSection()
    identifies: IdentifiesSection = IdentifiesSection()

    def user_id_column(
        self, section: Section = "default", metric: "MetricDefinition | None" = None
    ) -> str:
        return (
            (metric and metric.user_id_column)
            or getattr(self, section).user_id_column
            or self.default.user_id_column
            or FALLBACK_USER_ID_COLUMN
        )

    def anonymous_id_column(
        self, section: Section = "default", metric: "MetricDefinition | None" = None
    ) -> str:
        return (
            (metric and metric.anonymous_id_column)
            or getattr(self, section).anonymous_id_column
            or self.default.anonymous_id_column
            or FALLBACK_ANONYMOUS_ID_COLUMN
        )

    def timestamp_column(
        self, section: Section = "default", metric: "MetricDefinition | None" = None
    ) -> str:
        return (
            (metric and metric.timestamp_column)
            or getattr(self, section).timestamp_column
            or self.default.timestamp_column
            or FALLBACK_TIMESTAMP_COLUMN
        )

    def id_column(
        self,
        id_type: str,
        section: Section = "default",
        metric: "MetricDefinition | None" = None,
    ) -> str:
        """Column holding identifiers of `id_type` ("user" or "anonymous")."""
        if id_type == "user":
            return self.user_id_column(section, metric)
        return self.anonymous_id_column(section, metric)

    def variation_column(self) -> str:
        return self.experiments.variation_column

    def experiment_id_column(self) -> str:
        return self.experiments.experiment_id_column


def resolve_settings(raw: dict | None = None) -> SourceSettings:
    """Merge user-supplied settings onto the defaults, one section at a time.

    Fields that are missing, None or empty strings inherit the default, so
    nothing unset ever reaches the query composer.
    """
    raw = raw or {}
    merged = {}
    for section in SourceSettings.model_fields:
        merged[section] = {
            k: v for k, v in (raw.get(section) or {}).items() if v not in (None, "")
        }
    return SourceSettings.model_validate(merged)
