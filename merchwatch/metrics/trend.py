from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta
from typing import Sequence

from merchwatch.logger import get_logger
from merchwatch.state.base import MerchStore
from merchwatch.state.models import HistoryRow, TrendMetricsRow

logger = get_logger(__name__)

HISTORY_WINDOW = timedelta(days=7)
DAY = timedelta(hours=24)
WEEK = timedelta(days=7)

WEIGHT_BSR_7D = 0.57
WEIGHT_BSR_24H = 0.352
WEIGHT_REVIEWS_24H = 0.15


def normalize_bsr_delta(previous: int | float | None, current: int | float | None) -> float:
    """Relative rank improvement in [0, 1]; a worse or unknown rank scores 0."""
    if previous is None or current is None or previous <= 0:
        return 0.0
    improvement = previous - current
    if improvement <= 0:
        return 0.0
    return min(1.0, improvement / previous)


def normalize_review_growth(previous: int | float | None, current: int | float | None) -> float:
    if previous is None or current is None or current <= 0:
        return 0.0
    growth = current - previous
    if growth <= 0:
        return 0.0
    return min(1.0, growth / current)


def compute_momentum(
    *,
    bsr_7d: int | None,
    bsr_24h: int | None,
    bsr_now: int | None,
    reviews_24h: int | None,
    reviews_now: int | None,
) -> float:
    raw = (
        WEIGHT_BSR_7D * normalize_bsr_delta(bsr_7d, bsr_now)
        + WEIGHT_BSR_24H * normalize_bsr_delta(bsr_24h, bsr_now)
        + WEIGHT_REVIEWS_24H * normalize_review_growth(reviews_24h, reviews_now)
    )
    return max(0.0, min(1.0, raw))


def latest_at_or_before(rows: Sequence[HistoryRow], cutoff: datetime) -> HistoryRow | None:
    """``rows`` must be ordered oldest first."""
    candidate = None
    for row in rows:
        if row.captured_at <= cutoff:
            candidate = row
        else:
            break
    return candidate


class TrendAggregator:
    """Upserts ``merch_trend_metrics`` for every stored product."""

    def __init__(self, store: MerchStore) -> None:
        self.store = store

    def compute(self, asin: str, now: datetime) -> TrendMetricsRow:
        # Only the last seven days are read, so the 7d point exists only for a
        # row captured exactly at the window edge.
        rows = self.store.history_since(asin, now - HISTORY_WINDOW)
        latest = rows[-1] if rows else None
        day = latest_at_or_before(rows, now - DAY)
        week = latest_at_or_before(rows, now - WEEK)
        product = None
        if latest is None or latest.bsr is None or latest.reviews_count is None or latest.rating is None:
            product = self.store.get_product(asin)

        def now_value(field: str):
            value = getattr(latest, field) if latest is not None else None
            if value is None and product is not None:
                value = getattr(product, field)
            return value

        bsr_now = now_value("bsr")
        reviews_now = now_value("reviews_count")
        row = TrendMetricsRow(
            asin=asin,
            updated_at=now,
            bsr_now=bsr_now,
            bsr_24h=day.bsr if day else None,
            bsr_7d=week.bsr if week else None,
            reviews_now=reviews_now,
            reviews_24h=day.reviews_count if day else None,
            reviews_7d=week.reviews_count if week else None,
            rating_now=now_value("rating"),
        )
        row.momentum = compute_momentum(
            bsr_7d=row.bsr_7d,
            bsr_24h=row.bsr_24h,
            bsr_now=bsr_now,
            reviews_24h=row.reviews_24h,
            reviews_now=reviews_now,
        )
        return row

    def run(self, now: datetime) -> int:
        upserted = 0
        failed = 0
        for asin in self.store.list_product_asins():
            try:
                self.store.upsert_trend_metrics(self.compute(asin, now))
            except sqlite3.Error as exc:
                failed += 1
                logger.error("Trend metrics failed", extra={"asin": asin, "error": str(exc)})
                continue
            upserted += 1
        logger.info("Trend metrics updated", extra={"upserted": upserted, "failed": failed})
        return upserted
