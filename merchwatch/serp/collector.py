from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

from merchwatch.config.models import (
    DEFAULT_BASE_URL,
    DEFAULT_KEYWORD_ALIAS,
    DelayConfig,
    KeywordSettings,
)
from merchwatch.crawler.engines import FetchError, PageFetcher
from merchwatch.crawler.utils import normalize_whitespace
from merchwatch.logger import get_logger
from merchwatch.monitoring import build_error_event
from merchwatch.runtime.context import RunCancelled, RunContext
from merchwatch.serp.parser import SerpCard, parse_serp_page
from merchwatch.state.base import MerchStore
from merchwatch.state.models import SerpJob, SerpSnapshotRow

logger = get_logger(__name__)

MARKETPLACE_HOSTS = {
    "us": "https://www.amazon.com",
    "uk": "https://www.amazon.co.uk",
    "de": "https://www.amazon.de",
    "fr": "https://www.amazon.fr",
    "it": "https://www.amazon.it",
    "es": "https://www.amazon.es",
    "jp": "https://www.amazon.co.jp",
}


def normalize_term(term: str) -> str:
    return normalize_whitespace(term)


def normalize_alias(alias: str | None) -> str:
    value = (alias or "").strip().lower()
    return value or DEFAULT_KEYWORD_ALIAS


def serp_url(term: str, page: int, *, alias: str, fallback_base: str = DEFAULT_BASE_URL) -> str:
    base = MARKETPLACE_HOSTS.get(alias, fallback_base).rstrip("/")
    params = [("k", term)]
    if page > 1:
        params.append(("page", str(page)))
    return f"{base}/s?{urlencode(params)}"


def enqueue_serp_job(
    store: MerchStore,
    term: str,
    *,
    alias: str | None = None,
    priority: int = 0,
    now: datetime,
) -> int:
    cleaned = normalize_term(term)
    if not cleaned:
        raise ValueError("Keyword term must not be empty")
    return store.enqueue_serp_job(cleaned, normalize_alias(alias), priority, now)


def enqueue_keyword_jobs(
    store: MerchStore,
    settings: KeywordSettings,
    term: str,
    *,
    alias: str | None = None,
    priority: int = 0,
    now: datetime,
) -> list[int]:
    """Queues ``term`` for one alias, or for every configured alias when none is given."""
    aliases = [alias] if alias else settings.aliases
    return [
        enqueue_serp_job(store, term, alias=item, priority=priority, now=now) for item in aliases
    ]


@dataclass(slots=True)
class SerpSummary:
    jobs_processed: int = 0
    snapshots_inserted: int = 0
    completed: int = 0
    errors: int = 0
    cancelled: bool = False
    job_ids: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "jobsProcessed": self.jobs_processed,
            "snapshotsInserted": self.snapshots_inserted,
            "completed": self.completed,
            "errors": self.errors,
            "cancelled": self.cancelled,
            "jobIds": list(self.job_ids),
        }


class SerpCollector:
    """Works through pending keyword jobs and replaces their snapshots."""

    def __init__(
        self,
        *,
        store: MerchStore,
        fetcher: PageFetcher,
        settings: KeywordSettings,
        context: RunContext,
        batch_size: int = 5,
        delay: DelayConfig | None = None,
        base_url: str = DEFAULT_BASE_URL,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.settings = settings
        self.context = context
        self.batch_size = batch_size
        self.delay = delay or DelayConfig(min_sec=0.4, max_sec=0.8)
        self.base_url = base_url

    def collect(self, job: SerpJob) -> list[SerpCard]:
        """Fetches up to ``serp_pages`` pages, deduplicating ASINs, capped at ``topn``."""
        alias = normalize_alias(job.alias)
        collected: list[SerpCard] = []
        seen: set[str] = set()
        for page in range(1, self.settings.serp_pages + 1):
            if len(collected) >= self.settings.topn:
                break
            if page > 1 and not self.context.jitter_sleep(self.delay):
                raise RunCancelled(f"Run {self.context.run_id} stopped during job {job.id}")
            fetched = self.fetcher.fetch(
                serp_url(job.term, page, alias=alias, fallback_base=self.base_url)
            )
            cards = parse_serp_page(fetched.html, page)
            if not cards:
                logger.info("SERP page has no result cards", extra={"term": job.term, "page": page})
                break
            for card in cards:
                if card.asin in seen:
                    continue
                seen.add(card.asin)
                collected.append(card)
                if len(collected) >= self.settings.topn:
                    break
        return collected

    def store_snapshot(self, job: SerpJob, cards: list[SerpCard]) -> int:
        alias = normalize_alias(job.alias)
        fetched_at = self.context.now()
        rows = [
            SerpSnapshotRow(
                term=job.term,
                alias=alias,
                page=card.page,
                position=index,
                asin=card.asin,
                fetched_at=fetched_at,
                title=card.title,
                brand=card.brand,
                price_cents=card.price_cents,
                rating=card.rating,
                reviews_count=card.reviews_count,
                is_merch=card.is_merch,
                product_type=card.product_type,
            )
            for index, card in enumerate(cards, start=1)
        ]
        return self.store.replace_serp_snapshot(job.term, alias, rows)

    def process_queue(self) -> SerpSummary:
        summary = SerpSummary()
        jobs = self.store.pending_serp_jobs(self.batch_size)
        if not jobs:
            logger.info("SERP queue is empty")
            return summary
        for job in jobs:
            if self.context.should_stop:
                summary.cancelled = True
                break
            summary.jobs_processed += 1
            summary.job_ids.append(job.id)
            try:
                self.store.mark_serp_job(job.id, "processing")
                cards = self.collect(job)
                inserted = self.store_snapshot(job, cards)
                self.store.mark_serp_job(job.id, "completed")
            except RunCancelled:
                self.store.mark_serp_job(job.id, "pending")
                summary.cancelled = True
                break
            except Exception as exc:
                summary.errors += 1
                self._fail_job(job, exc)
                continue
            summary.completed += 1
            summary.snapshots_inserted += inserted
            logger.info(
                "SERP job completed",
                extra={"job_id": job.id, "term": job.term, "alias": job.alias, "rows": inserted},
            )
        logger.info("SERP batch finished", extra=summary.as_dict())
        return summary

    def _fail_job(self, job: SerpJob, exc: Exception) -> None:
        event = build_error_event(
            "serp_job",
            source="merchwatch.serp.collector",
            url=getattr(exc, "url", None),
            term=job.term,
            alias=job.alias,
            retryable=isinstance(exc, (FetchError, sqlite3.OperationalError)),
            details={"job_id": job.id, "error": f"{type(exc).__name__}: {exc}"},
        )
        if isinstance(exc, (FetchError, sqlite3.Error)):
            logger.error("SERP job failed", extra={"error_event": event})
        else:
            logger.exception("SERP job failed", extra={"error_event": event})
        try:
            self.store.mark_serp_job(job.id, "error", str(exc))
        except sqlite3.Error as mark_exc:
            logger.error(
                "SERP job status not updated",
                extra={"job_id": job.id, "error": str(mark_exc)},
            )
