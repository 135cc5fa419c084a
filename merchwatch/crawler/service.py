from __future__ import annotations

import sqlite3
from collections import deque
from datetime import datetime

from merchwatch.config.models import DEFAULT_BASE_URL, EffectiveSettings, SchedulerConfig
from merchwatch.crawler.discovery import CandidateDiscoverer
from merchwatch.crawler.engines import FetchError, PageFetcher
from merchwatch.crawler.extractor import extract_product
from merchwatch.crawler.models import Candidate, CrawlSummary
from merchwatch.crawler.utils import content_hash, product_url
from merchwatch.logger import get_logger
from merchwatch.monitoring import build_error_event
from merchwatch.runtime.context import RunCancelled, RunContext
from merchwatch.state.base import MerchStore
from merchwatch.state.crawl_state import CrawlStateTracker
from merchwatch.state.models import CrawlState, ProductSnapshot
from merchwatch.state.persistence import ProductPersistence

logger = get_logger(__name__)

# Hash recorded for pages that resolve to an ASIN but are not savable merch
# listings, so that they demote like unchanged pages.
UNSAVABLE_HASH = "unsavable"


def snapshot_hash(snapshot: ProductSnapshot) -> str:
    return content_hash(
        (
            snapshot.price_cents,
            snapshot.rating,
            snapshot.reviews_count,
            snapshot.bsr,
            snapshot.bsr_category,
            snapshot.title,
        )
    )


def has_moved(previous: ProductSnapshot | None, current: ProductSnapshot) -> bool:
    """Rank improved (went down) or the review count went up."""
    if previous is None:
        return False
    if previous.bsr is not None and current.bsr is not None and current.bsr < previous.bsr:
        return True
    return (
        previous.reviews_count is not None
        and current.reviews_count is not None
        and current.reviews_count > previous.reviews_count
    )


def _is_due(state: CrawlState, context: RunContext) -> bool:
    return not state.inactive and state.next_due <= context.now()


class CrawlService:
    """One discovery + extraction + persistence sweep."""

    def __init__(
        self,
        *,
        store: MerchStore,
        fetcher: PageFetcher,
        settings: EffectiveSettings,
        context: RunContext,
        scheduler: SchedulerConfig | None = None,
        base_url: str = DEFAULT_BASE_URL,
        follow_variants: bool = True,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.effective = settings
        self.settings = settings.settings
        self.context = context
        self.scheduler = scheduler or SchedulerConfig()
        self.base_url = base_url.rstrip("/")
        self.follow_variants = follow_variants
        self.tracker = CrawlStateTracker(store, self.scheduler, self.settings.recrawl_hours)
        self.persistence = ProductPersistence(store)
        self.discoverer = CandidateDiscoverer(
            fetcher, self.settings, context, base_url=self.base_url
        )

    def _initial_queue(
        self, discovered: list[Candidate], summary: CrawlSummary
    ) -> list[Candidate]:
        queue: list[Candidate] = []
        seen: set[str] = set()
        now = self.context.now()
        for candidate in discovered:
            if candidate.asin in seen:
                continue
            try:
                state = self.tracker.ensure(candidate.asin, source=candidate.source, now=now)
            except sqlite3.Error as exc:
                summary.failed += 1
                self._log_storage_failure(candidate.asin, exc)
                continue
            if _is_due(state, self.context):
                seen.add(candidate.asin)
                queue.append(candidate)
        for state in self.tracker.due(now, self.scheduler.due_batch_size or None):
            if state.asin in seen:
                continue
            seen.add(state.asin)
            summary.recrawl += 1
            queue.append(
                Candidate(
                    url=product_url(state.asin, self.base_url),
                    asin=state.asin,
                    source="recrawl",
                )
            )
        return queue

    def run(self) -> CrawlSummary:
        summary = CrawlSummary(
            run_id=self.context.run_id,
            started_at=self.context.started_at,
            overrides=self.effective.overridden_fields,
        )
        logger.info(
            "Crawl run started",
            extra={
                "run_id": self.context.run_id,
                "max_items_per_run": self.settings.max_items_per_run,
                "overrides": summary.overrides,
            },
        )
        discovered = self.discoverer.discover(self.settings.max_items_per_run)
        summary.candidates = len({candidate.asin for candidate in discovered})
        queue = deque(self._initial_queue(discovered, summary))
        seen = {candidate.asin for candidate in queue}
        if not queue:
            logger.warning(
                "Nothing to crawl: no discovered candidates and no due ASINs",
                extra={"discovered": summary.candidates},
            )

        while queue and summary.saved < self.settings.max_items_per_run:
            if summary.processed and not self.context.jitter_sleep(self.settings.product_delay):
                summary.cancelled = True
                break
            if self.context.should_stop:
                summary.cancelled = True
                break
            candidate = queue.popleft()
            summary.processed += 1
            try:
                self._process(candidate, queue, seen, summary)
            except RunCancelled:
                summary.cancelled = True
                break
            except sqlite3.Error as exc:
                summary.failed += 1
                self._log_storage_failure(candidate.asin, exc)
            except Exception as exc:
                summary.failed += 1
                event = build_error_event(
                    "parse",
                    source="merchwatch.crawler.service",
                    url=candidate.url,
                    asin=candidate.asin,
                    details={"error": f"{type(exc).__name__}: {exc}"},
                )
                logger.exception("Product page processing failed", extra={"error_event": event})

        summary.finished_at = self.context.now()
        logger.info("Crawl run finished", extra=summary.as_dict())
        return summary

    def _log_storage_failure(self, asin: str, exc: sqlite3.Error) -> None:
        event = build_error_event(
            "persist",
            source="merchwatch.state",
            asin=asin,
            details={"error": str(exc)},
        )
        logger.error("Crawl item not persisted", extra={"error_event": event})

    def _process(
        self,
        candidate: Candidate,
        queue: deque[Candidate],
        seen: set[str],
        summary: CrawlSummary,
    ) -> None:
        try:
            page = self.fetcher.fetch(candidate.url)
        except FetchError as exc:
            logger.warning(
                "Product fetch failed",
                extra={"asin": candidate.asin, "status": exc.status, "error": str(exc)},
            )
            self.tracker.record_failure(candidate.asin, now=self.context.now())
            summary.failed += 1
            return

        extraction = extract_product(
            page.html, candidate.url, final_url=page.final_url, base_url=self.base_url
        )
        now = self.context.now()
        if extraction.asin is None:
            event = build_error_event(
                "parse",
                source="merchwatch.crawler.extractor",
                url=candidate.url,
                asin=candidate.asin,
                details={"reason": "no ASIN on page", "final_url": page.final_url},
            )
            logger.error("Product page not parsed", extra={"error_event": event})
            self.tracker.record_failure(candidate.asin, now=now)
            summary.failed += 1
            return

        asin = extraction.asin
        if asin != candidate.asin:
            # Redirected to another listing: schedule the landing ASIN too.
            seen.add(asin)
            self.tracker.ensure(asin, source=candidate.source, now=now)
            logger.info(
                "Product page redirected",
                extra={"requested_asin": candidate.asin, "asin": asin},
            )

        if self.follow_variants:
            self._queue_variants(extraction.variant_asins, queue, seen, summary)

        if extraction.product is None:
            self._record_success(candidate.asin, asin, UNSAVABLE_HASH, False, now)
            summary.skipped += 1
            logger.debug(
                "Not a merch listing",
                extra={"asin": asin, "fashion_context": extraction.verdict.fashion_context},
            )
            return

        try:
            result = self.persistence.upsert_product(extraction.product, now=now)
        except sqlite3.Error as exc:
            summary.failed += 1
            event = build_error_event(
                "persist",
                source="merchwatch.state.persistence",
                asin=asin,
                details={"error": str(exc)},
            )
            logger.error("Product not persisted", extra={"error_event": event})
            return

        self._record_success(
            candidate.asin,
            asin,
            snapshot_hash(result.snapshot),
            has_moved(result.previous, result.snapshot),
            now,
        )
        summary.saved += 1
        summary.inserted += int(result.inserted)

    def _record_success(
        self, requested: str, asin: str, digest: str, moved: bool, now: datetime
    ) -> None:
        self.tracker.record_success(asin, content_hash=digest, moved=moved, now=now)
        if requested != asin:
            self.tracker.record_success(requested, content_hash=digest, moved=False, now=now)

    def _queue_variants(
        self,
        variant_asins: list[str],
        queue: deque[Candidate],
        seen: set[str],
        summary: CrawlSummary,
    ) -> None:
        now = self.context.now()
        for asin in variant_asins:
            if asin in seen:
                continue
            seen.add(asin)
            state = self.tracker.ensure(asin, source="variant", now=now)
            if not _is_due(state, self.context):
                continue
            queue.append(
                Candidate(url=product_url(asin, self.base_url), asin=asin, source="variant")
            )
            summary.variants_queued += 1
