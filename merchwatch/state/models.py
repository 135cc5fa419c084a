from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Literal

JobStatus = Literal["pending", "processing", "completed", "error"]


@dataclass(slots=True)
class ProductSnapshot:
    """Latest stored state of one product (the ``merch_products`` row)."""

    asin: str
    url: str
    first_seen: datetime
    last_seen: datetime
    title: str | None = None
    brand: str | None = None
    price_cents: int | None = None
    rating: float | None = None
    reviews_count: int | None = None
    bsr: int | None = None
    bsr_category: str | None = None
    image_url: str | None = None
    bullet1: str | None = None
    bullet2: str | None = None
    merch_flag_source: str | None = None
    product_type: str | None = None


@dataclass(slots=True, frozen=True)
class HistoryRow:
    asin: str
    captured_at: datetime
    price_cents: int | None = None
    rating: float | None = None
    reviews_count: int | None = None
    bsr: int | None = None
    bsr_category: str | None = None
    merch_flag_source: str | None = None
    product_type: str | None = None


@dataclass(slots=True)
class CrawlState:
    asin: str
    priority: int
    next_due: datetime
    last_hash: str | None = None
    unchanged_runs: int = 0
    fail_count: int = 0
    last_seen_at: datetime | None = None
    inactive: bool = False
    discovery_source: str | None = None


@dataclass(slots=True)
class SerpJob:
    id: int
    term: str
    alias: str
    priority: int
    requested_at: datetime
    status: JobStatus = "pending"
    error: str | None = None


@dataclass(slots=True)
class SerpSnapshotRow:
    term: str
    alias: str
    page: int
    position: int
    asin: str
    fetched_at: datetime
    title: str | None = None
    brand: str | None = None
    price_cents: int | None = None
    rating: float | None = None
    reviews_count: int | None = None
    bsr: int | None = None
    is_merch: bool = False
    product_type: str | None = None


@dataclass(slots=True)
class KeywordMetricsRow:
    term: str
    alias: str
    date: date
    avg_bsr: float | None = None
    med_bsr: float | None = None
    share_merch: float | None = None
    avg_reviews: float | None = None
    med_reviews: float | None = None
    top10_reviews_p80: float | None = None
    avg_rating: float | None = None
    serp_diversity: float | None = None
    price_iqr: float | None = None
    difficulty: int | None = None
    competition: float | None = None
    opportunity: int | None = None
    momentum_7d: float | None = None
    momentum_30d: float | None = None
    samples: int = 0
    intent_tags: list[str] = field(default_factory=list)
    updated_at: datetime | None = None


@dataclass(slots=True)
class TrendMetricsRow:
    asin: str
    updated_at: datetime
    bsr_now: int | None = None
    bsr_24h: int | None = None
    bsr_7d: int | None = None
    reviews_now: int | None = None
    reviews_24h: int | None = None
    reviews_7d: int | None = None
    rating_now: float | None = None
    momentum: float = 0.0
