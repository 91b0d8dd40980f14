"""Impact estimation for a hypothetical experiment.

Looks at the last 30 days of traffic (skipping the most recent 3 so late
conversions have landed) and estimates daily visitors to the targeted
pages and the daily metric value, both site-wide and on those pages.
"""

import logging
from datetime import datetime, timedelta, timezone

from src.analysis.experiment import WarehouseIntegration
from src.analysis.queries import join_queries
from src.analysis.results import ImpactEstimationResult, to_float, to_int
from src.analysis.schemas import (
    MetricDefinition,
    MetricValueParams,
    SegmentDefinition,
    UsersQueryParams,
)

logger = logging.getLogger(__name__)

NUM_DAYS = 30
# Conversions still trickling in for the most recent days
SETTLE_DAYS = 3
CONVERSION_WINDOW_HOURS = 3 * 24


async def estimate_impact(
    integration: WarehouseIntegration,
    url_regex: str,
    metric: MetricDefinition,
    segment: SegmentDefinition | None = None,
    now: datetime | None = None,
) -> ImpactEstimationResult:
    now = now or datetime.now(timezone.utc)
    base = {
        "date_from": now - timedelta(days=NUM_DAYS + SETTLE_DAYS),
        "date_to": now - timedelta(days=SETTLE_DAYS),
        "include_by_date": False,
        "user_id_type": metric.user_id_type,
        "conversion_window_hours": CONVERSION_WINDOW_HOURS,
    }
    composer = integration.composer

    users_sql = composer.users_query(
        UsersQueryParams(
            name="Traffic - Selected Pages and Segment",
            url_regex=url_regex,
            segment=segment,
            **base,
        )
    )
    metric_sql = composer.metric_value_query(
        MetricValueParams(
            name="Metric Value - Entire Site",
            metric=metric,
            include_percentiles=False,
            **base,
        )
    )
    value_sql = composer.metric_value_query(
        MetricValueParams(
            name="Metric Value - Selected Pages and Segment",
            metric=metric,
            include_percentiles=False,
            url_regex=url_regex,
            segment=segment,
            **base,
        )
    )

    users, metric_total, value = await integration.run_all([users_sql, metric_sql, value_sql])
    query = join_queries([users_sql, metric_sql, value_sql])

    if not (users and metric_total and value):
        logger.info("Impact estimation for %s returned no data", metric.id)
        return ImpactEstimationResult(query=query)

    return ImpactEstimationResult(
        query=query,
        users=to_int(users[0].get("users")) / NUM_DAYS,
        value=to_int(value[0].get("count")) * to_float(value[0].get("mean")) / NUM_DAYS,
        metric_total=(
            to_int(metric_total[0].get("count"))
            * to_float(metric_total[0].get("mean"))
            / NUM_DAYS
        ),
    )
