from __future__ import annotations

import copy
from dataclasses import replace
from datetime import date, datetime
from threading import Lock
from typing import Any

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


class MemoryStore:
    """In-process store with the same contract as :class:`SqliteStore`.

    Used for dry runs and injected by tests; nothing survives the process.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self.products: dict[str, ProductSnapshot] = {}
        self.history: list[HistoryRow] = []
        self.crawl_states: dict[str, CrawlState] = {}
        self.jobs: dict[int, SerpJob] = {}
        self.snapshots: dict[tuple[str, str], list[SerpSnapshotRow]] = {}
        self.keyword_metrics: dict[tuple[str, str, date], KeywordMetricsRow] = {}
        self.trend_metrics: dict[str, TrendMetricsRow] = {}
        self.crawler_settings: dict[str, Any] | None = None
        self.keyword_settings: dict[str, Any] | None = None
        self._next_job_id = 1

    def get_product(self, asin: str) -> ProductSnapshot | None:
        product = self.products.get(asin)
        return copy.copy(product) if product else None

    def upsert_product(self, snapshot: ProductSnapshot) -> bool:
        with self._lock:
            existing = self.products.get(snapshot.asin)
            if existing is not None:
                snapshot = replace(snapshot, first_seen=existing.first_seen)
            self.products[snapshot.asin] = copy.copy(snapshot)
            return existing is None

    def append_history(self, row: HistoryRow) -> None:
        with self._lock:
            self.history.append(row)

    def history_since(self, asin: str, since: datetime) -> list[HistoryRow]:
        rows = [row for row in self.history if row.asin == asin and row.captured_at >= since]
        return sorted(rows, key=lambda row: row.captured_at)

    def list_product_asins(self) -> list[str]:
        return sorted(self.products)

    def get_crawl_state(self, asin: str) -> CrawlState | None:
        state = self.crawl_states.get(asin)
        return copy.copy(state) if state else None

    def save_crawl_state(self, state: CrawlState) -> None:
        with self._lock:
            self.crawl_states[state.asin] = copy.copy(state)

    def due_crawl_states(self, now: datetime, limit: int | None = None) -> list[CrawlState]:
        due = [
            copy.copy(state)
            for state in self.crawl_states.values()
            if not state.inactive and state.next_due <= now
        ]
        due.sort(key=lambda state: (state.priority, state.next_due))
        return due if limit is None else due[:limit]

    def enqueue_serp_job(
        self, term: str, alias: str, priority: int, requested_at: datetime
    ) -> int:
        with self._lock:
            for job in self.jobs.values():
                if job.term == term and job.alias == alias and job.status == "pending":
                    job.priority = max(job.priority, priority)
                    return job.id
            job_id = self._next_job_id
            self._next_job_id += 1
            self.jobs[job_id] = SerpJob(
                id=job_id, term=term, alias=alias, priority=priority, requested_at=requested_at
            )
            return job_id

    def pending_serp_jobs(self, limit: int) -> list[SerpJob]:
        pending = [copy.copy(job) for job in self.jobs.values() if job.status == "pending"]
        pending.sort(key=lambda job: (-job.priority, job.requested_at, job.id))
        return pending[:limit]

    def get_serp_job(self, job_id: int) -> SerpJob | None:
        job = self.jobs.get(job_id)
        return copy.copy(job) if job else None

    def mark_serp_job(self, job_id: int, status: JobStatus, error: str | None = None) -> None:
        with self._lock:
            job = self.jobs[job_id]
            job.status = status
            job.error = error

    def replace_serp_snapshot(
        self, term: str, alias: str, rows: list[SerpSnapshotRow]
    ) -> int:
        with self._lock:
            self.snapshots[(term, alias)] = [copy.copy(row) for row in rows]
        return len(rows)

    def latest_serp_snapshot(self, term: str, alias: str) -> list[SerpSnapshotRow]:
        rows = self.snapshots.get((term, alias), [])
        if not rows:
            return []
        latest = max(row.fetched_at for row in rows)
        return sorted(
            (copy.copy(row) for row in rows if row.fetched_at == latest),
            key=lambda row: row.position,
        )

    def serp_snapshot_keys(self) -> list[tuple[str, str]]:
        return sorted(key for key, rows in self.snapshots.items() if rows)

    def upsert_keyword_metrics(self, row: KeywordMetricsRow) -> None:
        with self._lock:
            self.keyword_metrics[(row.term, row.alias, row.date)] = copy.deepcopy(row)

    def keyword_metrics_between(
        self, term: str, alias: str, start: date, end: date
    ) -> list[KeywordMetricsRow]:
        rows = [
            copy.deepcopy(row)
            for (row_term, row_alias, row_date), row in self.keyword_metrics.items()
            if row_term == term and row_alias == alias and start <= row_date <= end
        ]
        return sorted(rows, key=lambda row: row.date)

    def upsert_trend_metrics(self, row: TrendMetricsRow) -> None:
        with self._lock:
            self.trend_metrics[row.asin] = copy.copy(row)

    def get_trend_metrics(self, asin: str) -> TrendMetricsRow | None:
        row = self.trend_metrics.get(asin)
        return copy.copy(row) if row else None

    def load_crawler_settings(self) -> dict[str, Any] | None:
        return dict(self.crawler_settings) if self.crawler_settings is not None else None

    def save_crawler_settings(self, values: dict[str, Any]) -> None:
        self.crawler_settings = dict(values)

    def load_keyword_settings(self) -> dict[str, Any] | None:
        return dict(self.keyword_settings) if self.keyword_settings is not None else None

    def save_keyword_settings(self, values: dict[str, Any]) -> None:
        self.keyword_settings = dict(values)

    def close(self) -> None:
        pass
