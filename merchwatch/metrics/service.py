from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from merchwatch.config.models import KeywordSettings
from merchwatch.logger import get_logger
from merchwatch.metrics.keywords import KeywordMetricsEngine
from merchwatch.metrics.trend import TrendAggregator
from merchwatch.state.base import MerchStore

logger = get_logger(__name__)


@dataclass(slots=True)
class MetricsSummary:
    trend_upserted: int = 0
    keyword_upserted: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "trendMetrics": {"upserted": self.trend_upserted},
            "keywordMetrics": {"upserted": self.keyword_upserted},
        }


def run_metrics(store: MerchStore, settings: KeywordSettings, *, now: datetime) -> MetricsSummary:
    """Refreshes product trend momentum, then the daily keyword scores."""
    summary = MetricsSummary(
        trend_upserted=TrendAggregator(store).run(now),
        keyword_upserted=KeywordMetricsEngine(store, settings).run(now),
    )
    logger.info("Metrics run finished", extra={"summary": summary.as_dict()})
    return summary
