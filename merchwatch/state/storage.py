from __future__ import annotations

import json
import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any

from merchwatch.logger import get_logger
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

logger = get_logger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS merch_products (
        asin TEXT PRIMARY KEY,
        title TEXT,
        brand TEXT,
        price_cents INTEGER,
        rating REAL,
        reviews_count INTEGER,
        bsr INTEGER,
        bsr_category TEXT,
        url TEXT NOT NULL,
        image_url TEXT,
        bullet1 TEXT,
        bullet2 TEXT,
        merch_flag_source TEXT,
        product_type TEXT,
        first_seen TEXT NOT NULL,
        last_seen TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS merch_products_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        asin TEXT NOT NULL,
        captured_at TEXT NOT NULL,
        price_cents INTEGER,
        rating REAL,
        reviews_count INTEGER,
        bsr INTEGER,
        bsr_category TEXT,
        merch_flag_source TEXT,
        product_type TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_history_asin_ts ON merch_products_history(asin, captured_at)",
    """
    CREATE TABLE IF NOT EXISTS merch_crawl_state (
        asin TEXT PRIMARY KEY,
        priority INTEGER NOT NULL,
        next_due TEXT NOT NULL,
        last_hash TEXT,
        unchanged_runs INTEGER NOT NULL DEFAULT 0,
        fail_count INTEGER NOT NULL DEFAULT 0,
        last_seen_at TEXT,
        inactive INTEGER NOT NULL DEFAULT 0,
        discovery_source TEXT,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_crawl_state_due ON merch_crawl_state(inactive, priority, next_due)",
    """
    CREATE TABLE IF NOT EXISTS keyword_serp_queue (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        term TEXT NOT NULL,
        alias TEXT NOT NULL,
        priority INTEGER NOT NULL DEFAULT 0,
        requested_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        error TEXT,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS keyword_serp_snapshot (
        term TEXT NOT NULL,
        alias TEXT NOT NULL,
        page INTEGER NOT NULL,
        position INTEGER NOT NULL,
        asin TEXT NOT NULL,
        title TEXT,
        brand TEXT,
        price_cents INTEGER,
        rating REAL,
        reviews_count INTEGER,
        bsr INTEGER,
        is_merch INTEGER NOT NULL DEFAULT 0,
        product_type TEXT,
        fetched_at TEXT NOT NULL,
        PRIMARY KEY (term, alias, fetched_at, position)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS keyword_metrics_daily (
        term TEXT NOT NULL,
        alias TEXT NOT NULL,
        date TEXT NOT NULL,
        avg_bsr REAL,
        med_bsr REAL,
        share_merch REAL,
        avg_reviews REAL,
        med_reviews REAL,
        top10_reviews_p80 REAL,
        avg_rating REAL,
        serp_diversity REAL,
        price_iqr REAL,
        difficulty INTEGER,
        competition REAL,
        opportunity INTEGER,
        momentum_7d REAL,
        momentum_30d REAL,
        samples INTEGER NOT NULL DEFAULT 0,
        intent_tags TEXT NOT NULL DEFAULT '[]',
        updated_at TEXT NOT NULL,
        PRIMARY KEY (term, alias, date)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS merch_trend_metrics (
        asin TEXT PRIMARY KEY,
        bsr_now INTEGER,
        bsr_24h INTEGER,
        bsr_7d INTEGER,
        reviews_now INTEGER,
        reviews_24h INTEGER,
        reviews_7d INTEGER,
        rating_now REAL,
        momentum REAL NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS crawler_settings (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS keyword_settings (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
)

_PRODUCT_COLUMNS = (
    "asin",
    "title",
    "brand",
    "price_cents",
    "rating",
    "reviews_count",
    "bsr",
    "bsr_category",
    "url",
    "image_url",
    "bullet1",
    "bullet2",
    "merch_flag_source",
    "product_type",
    "first_seen",
    "last_seen",
)

_SNAPSHOT_COLUMNS = (
    "term",
    "alias",
    "page",
    "position",
    "asin",
    "title",
    "brand",
    "price_cents",
    "rating",
    "reviews_count",
    "bsr",
    "is_merch",
    "product_type",
    "fetched_at",
)

_METRICS_COLUMNS = (
    "term",
    "alias",
    "date",
    "avg_bsr",
    "med_bsr",
    "share_merch",
    "avg_reviews",
    "med_reviews",
    "top10_reviews_p80",
    "avg_rating",
    "serp_diversity",
    "price_iqr",
    "difficulty",
    "competition",
    "opportunity",
    "momentum_7d",
    "momentum_30d",
    "samples",
    "intent_tags",
    "updated_at",
)


def to_utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _upsert_sql(table: str, columns: tuple[str, ...], keys: tuple[str, ...]) -> str:
    updates = ", ".join(f"{name}=excluded.{name}" for name in columns if name not in keys)
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({', '.join('?' for _ in columns)}) "
        f"ON CONFLICT({', '.join(keys)}) DO UPDATE SET {updates}"
    )


class SqliteStore:
    """SQLite backing store for products, crawl state, SERP snapshots and metrics."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()
        logger.info("Store opened", extra={"db": str(self.db_path)})

    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    # products -----------------------------------------------------------------

    def get_product(self, asin: str) -> ProductSnapshot | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {', '.join(_PRODUCT_COLUMNS)} FROM merch_products WHERE asin=?",
                (asin,),
            ).fetchone()
        if not row:
            return None
        payload = dict(row)
        payload["first_seen"] = _parse_ts(payload["first_seen"])
        payload["last_seen"] = _parse_ts(payload["last_seen"])
        return ProductSnapshot(**payload)

    def upsert_product(self, snapshot: ProductSnapshot) -> bool:
        """Inserts or updates the row; returns True when it was newly inserted.

        ``first_seen`` is written on insert only.
        """
        values = {name: getattr(snapshot, name) for name in _PRODUCT_COLUMNS}
        values["first_seen"] = to_utc_iso(snapshot.first_seen)
        values["last_seen"] = to_utc_iso(snapshot.last_seen)
        columns = _PRODUCT_COLUMNS
        updates = ", ".join(
            f"{name}=excluded.{name}" for name in columns if name not in {"asin", "first_seen"}
        )
        with self._lock, self._conn:
            exists = self._conn.execute(
                "SELECT 1 FROM merch_products WHERE asin=?", (snapshot.asin,)
            ).fetchone()
            self._conn.execute(
                f"INSERT INTO merch_products ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)}) "
                f"ON CONFLICT(asin) DO UPDATE SET {updates}",
                tuple(values[name] for name in columns),
            )
        return exists is None

    def append_history(self, row: HistoryRow) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO merch_products_history
                (asin, captured_at, price_cents, rating, reviews_count, bsr,
                 bsr_category, merch_flag_source, product_type)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    row.asin,
                    to_utc_iso(row.captured_at),
                    row.price_cents,
                    row.rating,
                    row.reviews_count,
                    row.bsr,
                    row.bsr_category,
                    row.merch_flag_source,
                    row.product_type,
                ),
            )

    def history_since(self, asin: str, since: datetime) -> list[HistoryRow]:
        """History rows captured at or after ``since``, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT asin, captured_at, price_cents, rating, reviews_count, bsr,
                       bsr_category, merch_flag_source, product_type
                  FROM merch_products_history
                 WHERE asin=? AND captured_at >= ?
                 ORDER BY captured_at ASC, id ASC
                """,
                (asin, to_utc_iso(since)),
            ).fetchall()
        return [
            HistoryRow(**{**dict(row), "captured_at": _parse_ts(row["captured_at"])})
            for row in rows
        ]

    def list_product_asins(self) -> list[str]:
        with self._lock:
            rows = self._conn.execute("SELECT asin FROM merch_products ORDER BY asin").fetchall()
        return [row["asin"] for row in rows]

    # crawl state --------------------------------------------------------------

    def get_crawl_state(self, asin: str) -> CrawlState | None:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT asin, priority, next_due, last_hash, unchanged_runs, fail_count,
                       last_seen_at, inactive, discovery_source
                  FROM merch_crawl_state
                 WHERE asin=?
                """,
                (asin,),
            ).fetchone()
        return self._crawl_state_from_row(row) if row else None

    def save_crawl_state(self, state: CrawlState) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO merch_crawl_state
                (asin, priority, next_due, last_hash, unchanged_runs, fail_count,
                 last_seen_at, inactive, discovery_source)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(asin) DO UPDATE SET
                    priority=excluded.priority,
                    next_due=excluded.next_due,
                    last_hash=excluded.last_hash,
                    unchanged_runs=excluded.unchanged_runs,
                    fail_count=excluded.fail_count,
                    last_seen_at=excluded.last_seen_at,
                    inactive=excluded.inactive,
                    discovery_source=excluded.discovery_source,
                    updated_at=CURRENT_TIMESTAMP
                """,
                (
                    state.asin,
                    state.priority,
                    to_utc_iso(state.next_due),
                    state.last_hash,
                    state.unchanged_runs,
                    state.fail_count,
                    to_utc_iso(state.last_seen_at) if state.last_seen_at else None,
                    int(state.inactive),
                    state.discovery_source,
                ),
            )

    def due_crawl_states(self, now: datetime, limit: int | None = None) -> list[CrawlState]:
        """Active rows due at ``now``: most urgent tier first, then earliest due."""
        query = """
            SELECT asin, priority, next_due, last_hash, unchanged_runs, fail_count,
                   last_seen_at, inactive, discovery_source
              FROM merch_crawl_state
             WHERE inactive=0 AND next_due <= ?
             ORDER BY priority ASC, next_due ASC
        """
        params: tuple[Any, ...] = (to_utc_iso(now),)
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._crawl_state_from_row(row) for row in rows]

    @staticmethod
    def _crawl_state_from_row(row: sqlite3.Row) -> CrawlState:
        return CrawlState(
            asin=row["asin"],
            priority=row["priority"],
            next_due=_parse_ts(row["next_due"]),
            last_hash=row["last_hash"],
            unchanged_runs=row["unchanged_runs"],
            fail_count=row["fail_count"],
            last_seen_at=_parse_ts(row["last_seen_at"]),
            inactive=bool(row["inactive"]),
            discovery_source=row["discovery_source"],
        )

    # SERP queue ---------------------------------------------------------------

    def enqueue_serp_job(
        self, term: str, alias: str, priority: int, requested_at: datetime
    ) -> int:
        """Queues a job; an already pending (term, alias) job is reused."""
        with self._lock, self._conn:
            row = self._conn.execute(
                """
                SELECT id, priority FROM keyword_serp_queue
                 WHERE term=? AND alias=? AND status='pending'
                 ORDER BY id LIMIT 1
                """,
                (term, alias),
            ).fetchone()
            if row:
                if priority > row["priority"]:
                    self._conn.execute(
                        "UPDATE keyword_serp_queue SET priority=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
                        (priority, row["id"]),
                    )
                return int(row["id"])
            cursor = self._conn.execute(
                """
                INSERT INTO keyword_serp_queue (term, alias, priority, requested_at, status)
                VALUES (?, ?, ?, ?, 'pending')
                """,
                (term, alias, priority, to_utc_iso(requested_at)),
            )
            return int(cursor.lastrowid)

    def pending_serp_jobs(self, limit: int) -> list[SerpJob]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT id, term, alias, priority, requested_at, status, error
                  FROM keyword_serp_queue
                 WHERE status='pending'
                 ORDER BY priority DESC, requested_at ASC, id ASC
                 LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            SerpJob(**{**dict(row), "requested_at": _parse_ts(row["requested_at"])})
            for row in rows
        ]

    def get_serp_job(self, job_id: int) -> SerpJob | None:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT id, term, alias, priority, requested_at, status, error
                  FROM keyword_serp_queue WHERE id=?
                """,
                (job_id,),
            ).fetchone()
        if not row:
            return None
        return SerpJob(**{**dict(row), "requested_at": _parse_ts(row["requested_at"])})

    def mark_serp_job(self, job_id: int, status: JobStatus, error: str | None = None) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE keyword_serp_queue
                   SET status=?, error=?, updated_at=CURRENT_TIMESTAMP
                 WHERE id=?
                """,
                (status, error, job_id),
            )

    # SERP snapshots -----------------------------------------------------------

    def replace_serp_snapshot(
        self, term: str, alias: str, rows: list[SerpSnapshotRow]
    ) -> int:
        """Deletes the stored set for (term, alias) and inserts ``rows`` in one transaction."""
        payload = [
            (
                term,
                alias,
                row.page,
                row.position,
                row.asin,
                row.title,
                row.brand,
                row.price_cents,
                row.rating,
                row.reviews_count,
                row.bsr,
                int(row.is_merch),
                row.product_type,
                to_utc_iso(row.fetched_at),
            )
            for row in rows
        ]
        with self._lock, self._conn:
            self._conn.execute(
                "DELETE FROM keyword_serp_snapshot WHERE term=? AND alias=?", (term, alias)
            )
            self._conn.executemany(
                f"INSERT INTO keyword_serp_snapshot ({', '.join(_SNAPSHOT_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _SNAPSHOT_COLUMNS)})",
                payload,
            )
        return len(payload)

    def latest_serp_snapshot(self, term: str, alias: str) -> list[SerpSnapshotRow]:
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {', '.join(_SNAPSHOT_COLUMNS)}
                  FROM keyword_serp_snapshot
                 WHERE term=? AND alias=?
                   AND fetched_at = (
                       SELECT MAX(fetched_at) FROM keyword_serp_snapshot
                        WHERE term=? AND alias=?
                   )
                 ORDER BY position ASC
                """,
                (term, alias, term, alias),
            ).fetchall()
        return [
            SerpSnapshotRow(
                **{
                    **dict(row),
                    "is_merch": bool(row["is_merch"]),
                    "fetched_at": _parse_ts(row["fetched_at"]),
                }
            )
            for row in rows
        ]

    def serp_snapshot_keys(self) -> list[tuple[str, str]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT DISTINCT term, alias FROM keyword_serp_snapshot ORDER BY term, alias"
            ).fetchall()
        return [(row["term"], row["alias"]) for row in rows]

    # metrics ------------------------------------------------------------------

    def upsert_keyword_metrics(self, row: KeywordMetricsRow) -> None:
        values = {name: getattr(row, name) for name in _METRICS_COLUMNS}
        values["date"] = row.date.isoformat()
        values["intent_tags"] = json.dumps(list(row.intent_tags))
        values["updated_at"] = to_utc_iso(row.updated_at or datetime.now(timezone.utc))
        with self._lock, self._conn:
            self._conn.execute(
                _upsert_sql("keyword_metrics_daily", _METRICS_COLUMNS, ("term", "alias", "date")),
                tuple(values[name] for name in _METRICS_COLUMNS),
            )

    def keyword_metrics_between(
        self, term: str, alias: str, start: date, end: date
    ) -> list[KeywordMetricsRow]:
        """Daily rows with ``start <= date <= end``, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {', '.join(_METRICS_COLUMNS)}
                  FROM keyword_metrics_daily
                 WHERE term=? AND alias=? AND date >= ? AND date <= ?
                 ORDER BY date ASC
                """,
                (term, alias, start.isoformat(), end.isoformat()),
            ).fetchall()
        return [
            KeywordMetricsRow(
                **{
                    **dict(row),
                    "date": date.fromisoformat(row["date"]),
                    "intent_tags": json.loads(row["intent_tags"] or "[]"),
                    "updated_at": _parse_ts(row["updated_at"]),
                }
            )
            for row in rows
        ]

    def upsert_trend_metrics(self, row: TrendMetricsRow) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO merch_trend_metrics
                (asin, bsr_now, bsr_24h, bsr_7d, reviews_now, reviews_24h, reviews_7d,
                 rating_now, momentum, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(asin) DO UPDATE SET
                    bsr_now=excluded.bsr_now,
                    bsr_24h=excluded.bsr_24h,
                    bsr_7d=excluded.bsr_7d,
                    reviews_now=excluded.reviews_now,
                    reviews_24h=excluded.reviews_24h,
                    reviews_7d=excluded.reviews_7d,
                    rating_now=excluded.rating_now,
                    momentum=excluded.momentum,
                    updated_at=excluded.updated_at
                """,
                (
                    row.asin,
                    row.bsr_now,
                    row.bsr_24h,
                    row.bsr_7d,
                    row.reviews_now,
                    row.reviews_24h,
                    row.reviews_7d,
                    row.rating_now,
                    row.momentum,
                    to_utc_iso(row.updated_at),
                ),
            )

    def get_trend_metrics(self, asin: str) -> TrendMetricsRow | None:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT asin, bsr_now, bsr_24h, bsr_7d, reviews_now, reviews_24h,
                       reviews_7d, rating_now, momentum, updated_at
                  FROM merch_trend_metrics WHERE asin=?
                """,
                (asin,),
            ).fetchone()
        if not row:
            return None
        return TrendMetricsRow(**{**dict(row), "updated_at": _parse_ts(row["updated_at"])})

    # settings -----------------------------------------------------------------

    def _load_payload(self, table: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(f"SELECT payload FROM {table} WHERE id=1").fetchone()
        return json.loads(row["payload"]) if row else None

    def _save_payload(self, table: str, values: dict[str, Any]) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                f"""
                INSERT INTO {table} (id, payload) VALUES (1, ?)
                ON CONFLICT(id) DO UPDATE SET payload=excluded.payload,
                                              updated_at=CURRENT_TIMESTAMP
                """,
                (json.dumps(values, default=str),),
            )

    def load_crawler_settings(self) -> dict[str, Any] | None:
        return self._load_payload("crawler_settings")

    def save_crawler_settings(self, values: dict[str, Any]) -> None:
        self._save_payload("crawler_settings", values)

    def load_keyword_settings(self) -> dict[str, Any] | None:
        return self._load_payload("keyword_settings")

    def save_keyword_settings(self, values: dict[str, Any]) -> None:
        self._save_payload("keyword_settings", values)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
