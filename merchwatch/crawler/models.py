from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

SourceTag = Literal["zgbs", "new", "movers", "search", "variant", "recrawl"]


@dataclass(slots=True)
class ProductRecord:
    """Structured attributes scraped from one product detail page."""

    asin: str
    url: str
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
class MerchVerdict:
    is_merch: bool
    source: str | None = None
    fashion_context: bool = False


@dataclass(slots=True)
class ExtractionResult:
    """Outcome of parsing one page.

    ``asin`` is None when the page could not be identified at all; a
    resolved ASIN with ``product`` None means the page is not a savable
    merch listing.
    """

    asin: str | None
    product: ProductRecord | None
    variant_asins: list[str] = field(default_factory=list)
    verdict: MerchVerdict = field(default_factory=lambda: MerchVerdict(False))


@dataclass(slots=True)
class Candidate:
    url: str
    asin: str
    source: SourceTag


@dataclass(slots=True)
class FetchedPage:
    url: str
    final_url: str
    status: int
    html: str


@dataclass(slots=True)
class CrawlSummary:
    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    candidates: int = 0
    recrawl: int = 0
    processed: int = 0
    saved: int = 0
    inserted: int = 0
    skipped: int = 0
    failed: int = 0
    variants_queued: int = 0
    cancelled: bool = False
    overrides: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["started_at"] = self.started_at.isoformat()
        payload["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return payload
