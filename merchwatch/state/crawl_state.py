from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Sequence

from merchwatch.config.models import SchedulerConfig
from merchwatch.logger import get_logger
from merchwatch.state.base import MerchStore
from merchwatch.state.models import CrawlState

logger = get_logger(__name__)

MOST_URGENT_TIER = 0


def apply_success(
    state: CrawlState,
    *,
    content_hash: str,
    moved: bool,
    now: datetime,
    recrawl_hours: Sequence[float],
    unchanged_thresholds: Sequence[int],
) -> CrawlState:
    """Next state after a successful crawl.

    Unchanged content counts towards demotion (one tier at a time, never past
    the slowest tier); changed content resets the counter and, when the caller
    reports movement, promotes one tier towards the most urgent.
    """
    floor_tier = len(recrawl_hours) - 1
    priority = min(state.priority, floor_tier)
    if state.last_hash is not None and state.last_hash == content_hash:
        unchanged_runs = state.unchanged_runs + 1
        threshold = unchanged_thresholds[min(priority, len(unchanged_thresholds) - 1)]
        if unchanged_runs >= threshold and priority < floor_tier:
            priority += 1
            unchanged_runs = 0
        last_seen_at = state.last_seen_at
    else:
        unchanged_runs = 0
        if moved:
            priority = max(MOST_URGENT_TIER, priority - 1)
        last_seen_at = now
    return replace(
        state,
        priority=priority,
        next_due=now + timedelta(hours=recrawl_hours[priority]),
        last_hash=content_hash,
        unchanged_runs=unchanged_runs,
        fail_count=0,
        last_seen_at=last_seen_at,
        inactive=False,
    )


def failure_backoff(fail_count: int, *, base_hours: float, max_hours: float) -> timedelta:
    """``base * 2**(n-1)`` hours, capped at ``max_hours``."""
    exponent = max(0, fail_count - 1)
    return timedelta(hours=min(base_hours * (2 ** exponent), max_hours))


def apply_failure(
    state: CrawlState,
    *,
    now: datetime,
    max_failures: int,
    backoff_base_hours: float,
    backoff_max_hours: float,
) -> CrawlState:
    fail_count = state.fail_count + 1
    return replace(
        state,
        fail_count=fail_count,
        inactive=state.inactive or fail_count > max_failures,
        next_due=now
        + failure_backoff(fail_count, base_hours=backoff_base_hours, max_hours=backoff_max_hours),
    )


class CrawlStateTracker:
    """Reads and writes per-ASIN crawl state through the store."""

    def __init__(
        self,
        store: MerchStore,
        scheduler: SchedulerConfig,
        recrawl_hours: Sequence[float],
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.recrawl_hours = tuple(recrawl_hours)

    def ensure(self, asin: str, *, source: str | None, now: datetime) -> CrawlState:
        """Returns the stored row, creating a due-now row on first discovery."""
        state = self.store.get_crawl_state(asin)
        if state is not None:
            return state
        tier = min(self.scheduler.new_item_tier, len(self.recrawl_hours) - 1)
        state = CrawlState(asin=asin, priority=tier, next_due=now, discovery_source=source)
        self.store.save_crawl_state(state)
        logger.debug("New crawl state", extra={"asin": asin, "source": source})
        return state

    def record_success(
        self, asin: str, *, content_hash: str, moved: bool, now: datetime
    ) -> CrawlState:
        state = self.ensure(asin, source=None, now=now)
        updated = apply_success(
            state,
            content_hash=content_hash,
            moved=moved,
            now=now,
            recrawl_hours=self.recrawl_hours,
            unchanged_thresholds=self.scheduler.unchanged_thresholds,
        )
        if updated.priority != state.priority:
            logger.info(
                "Crawl priority changed",
                extra={"asin": asin, "from": state.priority, "to": updated.priority},
            )
        self.store.save_crawl_state(updated)
        return updated

    def record_failure(self, asin: str, *, now: datetime) -> CrawlState:
        state = self.ensure(asin, source=None, now=now)
        updated = apply_failure(
            state,
            now=now,
            max_failures=self.scheduler.max_failures,
            backoff_base_hours=self.scheduler.backoff_base_hours,
            backoff_max_hours=self.scheduler.backoff_max_hours,
        )
        if updated.inactive and not state.inactive:
            logger.warning(
                "ASIN deactivated after repeated failures",
                extra={"asin": asin, "fail_count": updated.fail_count},
            )
        self.store.save_crawl_state(updated)
        return updated

    def due(self, now: datetime, limit: int | None = None) -> list[CrawlState]:
        return self.store.due_crawl_states(now, limit)
