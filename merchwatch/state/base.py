from __future__ import annotations

from datetime import date, datetime
from typing import Any, Protocol

from merchwatch.state.models import (
    CrawlState,
    HistoryRow,
    JobStatus,
    KeywordMetricsRow,
    ProductSnapshot,
    SerpJob,
    SerpSnapshotRow,
    TrendMetricsRow,
)


class MerchStore(Protocol):
    """Storage contract of the pipeline.

    Every write is scoped to one ASIN or one (term, alias) key, so callers
    never need cross-item transactions.
    """

    # products
    def get_product(self, asin: str) -> ProductSnapshot | None: ...

    def upsert_product(self, snapshot: ProductSnapshot) -> bool: ...

    def append_history(self, row: HistoryRow) -> None: ...

    def history_since(self, asin: str, since: datetime) -> list[HistoryRow]: ...

    def list_product_asins(self) -> list[str]: ...

    # crawl state
    def get_crawl_state(self, asin: str) -> CrawlState | None: ...

    def save_crawl_state(self, state: CrawlState) -> None: ...

    def due_crawl_states(self, now: datetime, limit: int | None = None) -> list[CrawlState]: ...

    # SERP queue and snapshots
    def enqueue_serp_job(
        self, term: str, alias: str, priority: int, requested_at: datetime
    ) -> int: ...

    def pending_serp_jobs(self, limit: int) -> list[SerpJob]: ...

    def get_serp_job(self, job_id: int) -> SerpJob | None: ...

    def mark_serp_job(self, job_id: int, status: JobStatus, error: str | None = None) -> None: ...

    def replace_serp_snapshot(
        self, term: str, alias: str, rows: list[SerpSnapshotRow]
    ) -> int: ...

    def latest_serp_snapshot(self, term: str, alias: str) -> list[SerpSnapshotRow]: ...

    def serp_snapshot_keys(self) -> list[tuple[str, str]]: ...

    # metrics
    def upsert_keyword_metrics(self, row: KeywordMetricsRow) -> None: ...

    def keyword_metrics_between(
        self, term: str, alias: str, start: date, end: date
    ) -> list[KeywordMetricsRow]: ...

    def upsert_trend_metrics(self, row: TrendMetricsRow) -> None: ...

    def get_trend_metrics(self, asin: str) -> TrendMetricsRow | None: ...

    # settings rows
    def load_crawler_settings(self) -> dict[str, Any] | None: ...

    def save_crawler_settings(self, values: dict[str, Any]) -> None: ...

    def load_keyword_settings(self) -> dict[str, Any] | None: ...

    def save_keyword_settings(self, values: dict[str, Any]) -> None: ...

    def close(self) -> None: ...
