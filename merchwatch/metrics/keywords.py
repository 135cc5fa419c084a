from __future__ import annotations

import math
import re
import sqlite3
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from statistics import mean, median
from typing import Callable, Iterable, Sequence

from merchwatch.config.models import KeywordSettings
from merchwatch.logger import get_logger
from merchwatch.state.base import MerchStore
from merchwatch.state.models import KeywordMetricsRow, SerpSnapshotRow

logger = get_logger(__name__)

TOP_RESULTS = 10
MOMENTUM_WINDOWS = (7, 30)

INTENT_KEYWORDS: dict[str, tuple[str, ...]] = {
    "gift": ("gift", "gifts", "present", "birthday", "anniversary"),
    "funny": ("funny", "humor", "humour", "joke", "sarcastic", "pun", "meme"),
    "holiday": (
        "christmas",
        "xmas",
        "halloween",
        "thanksgiving",
        "easter",
        "valentine",
        "valentines",
        "hanukkah",
        "patrick",
        "4th of july",
        "new year",
    ),
    "profession": (
        "nurse",
        "teacher",
        "doctor",
        "engineer",
        "lawyer",
        "firefighter",
        "police",
        "chef",
        "mechanic",
        "trucker",
        "programmer",
    ),
    "family": ("mom", "dad", "mother", "father", "grandma", "grandpa", "sister", "brother", "family", "papa", "mama"),
    "sports": ("football", "soccer", "baseball", "basketball", "hockey", "golf", "tennis", "fishing", "hunting", "running", "gym"),
    "animal": ("dog", "cat", "horse", "bird", "fish", "animal", "pet", "puppy", "kitten", "cow", "chicken"),
}


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def percentile(values: Sequence[float], q: float) -> float | None:
    """Linear-interpolation percentile, ``q`` in [0, 1]."""
    if not values:
        return None
    ordered = sorted(values)
    position = (len(ordered) - 1) * q
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(ordered[lower])
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (position - lower)


def interquartile_range(values: Sequence[float]) -> float | None:
    if not values:
        return None
    return percentile(values, 0.75) - percentile(values, 0.25)


def shannon_entropy(labels: Iterable[str | None]) -> float | None:
    """Natural-log entropy over non-empty labels (case-insensitive)."""
    counts = Counter(label.strip().lower() for label in labels if label and label.strip())
    total = sum(counts.values())
    if not total:
        return None
    return -sum((count / total) * math.log(count / total) for count in counts.values())


def intent_tags(term: str) -> list[str]:
    text = term.lower()
    return [
        tag
        for tag, words in INTENT_KEYWORDS.items()
        if any(re.search(rf"\b{re.escape(word)}\b", text) for word in words)
    ]


def _mean(values: Sequence[float]) -> float | None:
    return float(mean(values)) if values else None


def _median(values: Sequence[float]) -> float | None:
    return float(median(values)) if values else None


@dataclass(slots=True)
class KeywordStats:
    term: str
    alias: str
    samples: int
    avg_bsr: float | None = None
    med_bsr: float | None = None
    avg_reviews: float | None = None
    med_reviews: float | None = None
    reviews_p80: float | None = None
    avg_rating: float | None = None
    share_merch: float = 0.0
    diversity: float | None = None
    price_iqr: float | None = None


def compute_keyword_stats(
    term: str,
    alias: str,
    rows: Sequence[SerpSnapshotRow],
    bsr_lookup: Callable[[str], int | None] | None = None,
) -> KeywordStats:
    """Aggregates the top results of one snapshot.

    Rows without a rank take the stored product's rank through ``bsr_lookup``.
    """
    top = sorted(rows, key=lambda row: row.position)[:TOP_RESULTS]
    bsrs: list[float] = []
    for row in top:
        bsr = row.bsr
        if bsr is None and bsr_lookup is not None:
            bsr = bsr_lookup(row.asin)
        if bsr is not None:
            bsrs.append(bsr)
    reviews = [row.reviews_count for row in top if row.reviews_count is not None]
    ratings = [row.rating for row in top if row.rating is not None]
    prices = [row.price_cents for row in top if row.price_cents is not None]
    return KeywordStats(
        term=term,
        alias=alias,
        samples=len(top),
        avg_bsr=_mean(bsrs),
        med_bsr=_median(bsrs),
        avg_reviews=_mean(reviews),
        med_reviews=_median(reviews),
        reviews_p80=percentile(reviews, 0.8),
        avg_rating=_mean(ratings),
        share_merch=(sum(1 for row in top if row.is_merch) / len(top)) if top else 0.0,
        diversity=shannon_entropy(row.brand for row in top),
        price_iqr=interquartile_range(prices),
    )


@dataclass(slots=True)
class Bounds:
    low: float | None = None
    high: float | None = None

    @classmethod
    def of(cls, values: Iterable[float | None]) -> "Bounds":
        present = [value for value in values if value is not None]
        if not present:
            return cls()
        return cls(min(present), max(present))

    def norm(self, value: float | None) -> float:
        """Rescales into [0, 1]; an unknown value or a flat range maps to 0.5."""
        if value is None or self.low is None or self.high is None or self.high == self.low:
            return 0.5
        return clamp((value - self.low) / (self.high - self.low), 0.0, 1.0)


@dataclass(slots=True)
class RunBounds:
    """Min/max of each scored metric across the keywords of one run."""

    reviews_p80: Bounds = field(default_factory=Bounds)
    avg_bsr: Bounds = field(default_factory=Bounds)
    avg_rating: Bounds = field(default_factory=Bounds)
    diversity: Bounds = field(default_factory=Bounds)

    @classmethod
    def of(cls, stats: Sequence[KeywordStats]) -> "RunBounds":
        return cls(
            reviews_p80=Bounds.of(item.reviews_p80 for item in stats),
            avg_bsr=Bounds.of(item.avg_bsr for item in stats),
            avg_rating=Bounds.of(item.avg_rating for item in stats),
            diversity=Bounds.of(item.diversity for item in stats),
        )


def compute_competition(stats: KeywordStats, bounds: RunBounds, weights: KeywordSettings) -> float:
    return (
        weights.weight_reviews * bounds.reviews_p80.norm(stats.reviews_p80)
        + weights.weight_bsr * (1 - bounds.avg_bsr.norm(stats.avg_bsr))
        + weights.weight_merch * (1 - stats.share_merch)
        + weights.weight_rating * bounds.avg_rating.norm(stats.avg_rating)
        + weights.weight_diversity * (1 - bounds.diversity.norm(stats.diversity))
    )


def window_momentum(current_avg_bsr: float | None, history: Sequence[KeywordMetricsRow]) -> float | None:
    """``(baseline - current) / baseline`` against the mean stored ``avg_bsr``."""
    baseline_values = [row.avg_bsr for row in history if row.avg_bsr is not None]
    if current_avg_bsr is None or not baseline_values:
        return None
    baseline = mean(baseline_values)
    if baseline == 0:
        return None
    return (baseline - current_avg_bsr) / baseline


def normalize_momentum(momentum: float | None, fallback: float = 0.5) -> float:
    """Maps [-1, 1] onto [0, 1]."""
    if momentum is None:
        return fallback
    return (clamp(momentum, -1.0, 1.0) + 1) / 2


def compute_difficulty(competition: float) -> int:
    return round_half_up(clamp(competition * 100, 0, 100))


def compute_opportunity(competition: float, momentum_7d: float | None) -> int:
    return round_half_up(clamp((1 - competition) * normalize_momentum(momentum_7d) * 100, 0, 100))


class KeywordMetricsEngine:
    """Scores every (term, alias) with a stored SERP snapshot, once per day."""

    def __init__(self, store: MerchStore, settings: KeywordSettings) -> None:
        self.store = store
        self.settings = settings

    def _bsr_lookup(self, asin: str) -> int | None:
        product = self.store.get_product(asin)
        return product.bsr if product else None

    def collect_stats(self) -> list[KeywordStats]:
        collected: list[KeywordStats] = []
        for term, alias in self.store.serp_snapshot_keys():
            try:
                rows = self.store.latest_serp_snapshot(term, alias)
                if rows:
                    collected.append(compute_keyword_stats(term, alias, rows, self._bsr_lookup))
            except sqlite3.Error as exc:
                logger.error(
                    "Keyword snapshot not readable",
                    extra={"term": term, "alias": alias, "error": str(exc)},
                )
        return collected

    def build_row(
        self, stats: KeywordStats, bounds: RunBounds, today: date, now: datetime
    ) -> KeywordMetricsRow:
        competition = compute_competition(stats, bounds, self.settings)
        momentum = {
            days: window_momentum(
                stats.avg_bsr,
                self.store.keyword_metrics_between(
                    stats.term, stats.alias, today - timedelta(days=days), today
                ),
            )
            for days in MOMENTUM_WINDOWS
        }
        return KeywordMetricsRow(
            term=stats.term,
            alias=stats.alias,
            date=today,
            avg_bsr=stats.avg_bsr,
            med_bsr=stats.med_bsr,
            share_merch=stats.share_merch,
            avg_reviews=stats.avg_reviews,
            med_reviews=stats.med_reviews,
            top10_reviews_p80=stats.reviews_p80,
            avg_rating=stats.avg_rating,
            serp_diversity=stats.diversity,
            price_iqr=stats.price_iqr,
            difficulty=compute_difficulty(competition),
            competition=competition,
            opportunity=compute_opportunity(competition, momentum[7]),
            momentum_7d=momentum[7],
            momentum_30d=momentum[30],
            samples=stats.samples,
            intent_tags=intent_tags(stats.term),
            updated_at=now,
        )

    def run(self, now: datetime) -> int:
        today = now.date()
        stats = self.collect_stats()
        bounds = RunBounds.of(stats)
        upserted = 0
        for item in stats:
            try:
                self.store.upsert_keyword_metrics(self.build_row(item, bounds, today, now))
            except sqlite3.Error as exc:
                logger.error(
                    "Keyword metrics failed",
                    extra={"term": item.term, "alias": item.alias, "error": str(exc)},
                )
                continue
            upserted += 1
        logger.info("Keyword metrics updated", extra={"upserted": upserted, "keywords": len(stats)})
        return upserted
