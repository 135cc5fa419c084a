from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from merchwatch.state import SqliteStore
from merchwatch.state.models import (
    CrawlState,
    HistoryRow,
    KeywordMetricsRow,
    ProductSnapshot,
    SerpSnapshotRow,
    TrendMetricsRow,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def store(tmp_path: Path):
    store = SqliteStore(tmp_path / "state" / "merch.db")
    yield store
    store.close()


def _snapshot_row(term: str, position: int, asin: str, fetched_at: datetime) -> SerpSnapshotRow:
    return SerpSnapshotRow(
        term=term,
        alias="us",
        page=1,
        position=position,
        asin=asin,
        fetched_at=fetched_at,
        title=f"Tee {position}",
        price_cents=1999,
        is_merch=position % 2 == 1,
    )


def test_product_upsert_keeps_first_seen(store: SqliteStore) -> None:
    snapshot = ProductSnapshot(
        asin="B0ABCDEF12",
        url="https://www.amazon.com/dp/B0ABCDEF12",
        first_seen=NOW,
        last_seen=NOW,
        title="Cat Tee",
        bsr=1000,
    )

    assert store.upsert_product(snapshot) is True

    snapshot.first_seen = NOW + timedelta(days=1)
    snapshot.last_seen = NOW + timedelta(days=1)
    snapshot.bsr = 900
    assert store.upsert_product(snapshot) is False

    stored = store.get_product("B0ABCDEF12")
    assert stored.first_seen == NOW
    assert stored.last_seen == NOW + timedelta(days=1)
    assert stored.bsr == 900
    assert store.list_product_asins() == ["B0ABCDEF12"]
    assert store.get_product("B0MISSING00") is None


def test_history_since_filters_and_orders(store: SqliteStore) -> None:
    for hours, bsr in ((48, 3000), (2, 2000), (1, 1000)):
        store.append_history(
            HistoryRow(asin="B0ABCDEF12", captured_at=NOW - timedelta(hours=hours), bsr=bsr)
        )
    store.append_history(HistoryRow(asin="B0OTHER0001", captured_at=NOW, bsr=5))

    rows = store.history_since("B0ABCDEF12", NOW - timedelta(hours=24))

    assert [row.bsr for row in rows] == [2000, 1000]


def test_crawl_state_roundtrip_and_due_order(store: SqliteStore) -> None:
    store.save_crawl_state(
        CrawlState(
            asin="B0ABCDEF12",
            priority=2,
            next_due=NOW - timedelta(hours=1),
            last_hash="abc",
            last_seen_at=NOW - timedelta(days=1),
            discovery_source="zgbs",
        )
    )
    store.save_crawl_state(CrawlState(asin="B0URGENT001", priority=0, next_due=NOW))
    store.save_crawl_state(
        CrawlState(asin="B0INACTIVE1", priority=0, next_due=NOW - timedelta(days=1), inactive=True)
    )
    store.save_crawl_state(CrawlState(asin="B0FUTURE001", priority=0, next_due=NOW + timedelta(hours=1)))

    state = store.get_crawl_state("B0ABCDEF12")
    assert state.last_hash == "abc"
    assert state.discovery_source == "zgbs"
    assert state.last_seen_at == NOW - timedelta(days=1)

    due = store.due_crawl_states(NOW)
    assert [row.asin for row in due] == ["B0URGENT001", "B0ABCDEF12"]
    assert [row.asin for row in store.due_crawl_states(NOW, limit=1)] == ["B0URGENT001"]


def test_serp_queue_orders_and_deduplicates(store: SqliteStore) -> None:
    low = store.enqueue_serp_job("cat shirt", "us", 0, NOW)
    high = store.enqueue_serp_job("dog shirt", "us", 5, NOW + timedelta(minutes=1))
    same = store.enqueue_serp_job("cat shirt", "us", 9, NOW + timedelta(minutes=2))

    assert same == low
    assert [job.id for job in store.pending_serp_jobs(10)] == [low, high]

    store.mark_serp_job(low, "error", "timeout")
    job = store.get_serp_job(low)
    assert (job.status, job.error) == ("error", "timeout")
    assert [job.id for job in store.pending_serp_jobs(10)] == [high]

    again = store.enqueue_serp_job("cat shirt", "us", 0, NOW)
    assert again not in {low, high}


def test_replace_serp_snapshot_removes_previous_rows(store: SqliteStore) -> None:
    first = NOW - timedelta(days=1)
    store.replace_serp_snapshot(
        "cat shirt",
        "us",
        [_snapshot_row("cat shirt", position, f"B0FIRST000{position}", first) for position in (1, 2, 3)],
    )

    inserted = store.replace_serp_snapshot(
        "cat shirt", "us", [_snapshot_row("cat shirt", 1, "B0SECOND001", NOW)]
    )

    rows = store.latest_serp_snapshot("cat shirt", "us")
    assert inserted == 1
    assert [row.asin for row in rows] == ["B0SECOND001"]
    assert rows[0].is_merch is True
    assert rows[0].fetched_at == NOW
    assert store.serp_snapshot_keys() == [("cat shirt", "us")]


def test_empty_snapshot_clears_previous(store: SqliteStore) -> None:
    store.replace_serp_snapshot("cat shirt", "us", [_snapshot_row("cat shirt", 1, "B0FIRST0001", NOW)])

    assert store.replace_serp_snapshot("cat shirt", "us", []) == 0
    assert store.latest_serp_snapshot("cat shirt", "us") == []
    assert store.serp_snapshot_keys() == []


def test_keyword_metrics_upsert_is_idempotent(store: SqliteStore) -> None:
    row = KeywordMetricsRow(
        term="cat shirt",
        alias="us",
        date=date(2026, 3, 1),
        avg_bsr=1200.0,
        difficulty=40,
        intent_tags=["animal"],
        samples=10,
        updated_at=NOW,
    )
    store.upsert_keyword_metrics(row)
    row.difficulty = 55
    store.upsert_keyword_metrics(row)

    rows = store.keyword_metrics_between("cat shirt", "us", date(2026, 2, 1), date(2026, 3, 1))

    assert len(rows) == 1
    assert rows[0].difficulty == 55
    assert rows[0].intent_tags == ["animal"]
    assert store.keyword_metrics_between("cat shirt", "us", date(2026, 2, 1), date(2026, 2, 28)) == []


def test_trend_metrics_roundtrip(store: SqliteStore) -> None:
    store.upsert_trend_metrics(TrendMetricsRow(asin="B0ABCDEF12", updated_at=NOW, bsr_now=10, momentum=0.4))
    store.upsert_trend_metrics(TrendMetricsRow(asin="B0ABCDEF12", updated_at=NOW, bsr_now=8, momentum=0.6))

    row = store.get_trend_metrics("B0ABCDEF12")

    assert row.bsr_now == 8
    assert row.momentum == pytest.approx(0.6)
    assert row.updated_at == NOW


def test_settings_payloads_roundtrip(store: SqliteStore) -> None:
    assert store.load_crawler_settings() is None

    store.save_crawler_settings({"use_search": True, "search_keywords": ["cat"]})
    store.save_keyword_settings({"aliases": ["us", "de"]})
    store.save_crawler_settings({"use_search": False})

    assert store.load_crawler_settings() == {"use_search": False}
    assert store.load_keyword_settings() == {"aliases": ["us", "de"]}
