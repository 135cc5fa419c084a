from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

from merchwatch.config.env_loader import build_effective_settings
from merchwatch.crawler.discovery import listing_url
from merchwatch.crawler.engines import FetchError
from merchwatch.crawler.models import FetchedPage
from merchwatch.crawler.service import UNSAVABLE_HASH, CrawlService, has_moved
from merchwatch.runtime import RunContext
from merchwatch.state import MemoryStore
from merchwatch.state.models import CrawlState, ProductSnapshot

BASE = "https://www.amazon.com"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

SETTINGS = {
    "use_best_sellers": True,
    "zgbs_paths": ["/zgbs/fashion"],
    "zgbs_pages": 3,
    "per_page_delay_ms_min": 0,
    "per_page_delay_ms_max": 0,
    "per_product_delay_ms_min": 0,
    "per_product_delay_ms_max": 0,
}


def _merch_page(asin: str, *, bsr: int, variants: tuple[str, ...] = ()) -> str:
    children = ",".join(f'"{child}"' for child in variants)
    return f"""
    <html><body>
      <div id="wayfinding-breadcrumbs_feature_div"><li>Clothing, Shoes &amp; Jewelry</li></div>
      <span id="productTitle">Funny Cat Tee {asin}</span>
      <a id="bylineInfo">Brand: Merch on Demand</a>
      <div id="corePrice_feature_div"><span class="a-offscreen">$19.99</span></div>
      <span id="acrCustomerReviewText">12 ratings</span>
      <div id="detailBulletsWrapper_feature_div"><span>Best Sellers Rank #{bsr:,} in Clothing</span></div>
      <div id="twister" data-twister-json='{{"asin":"{asin}","childAsins":[{children}]}}'></div>
    </body></html>
    """


PLAIN_PAGE = """
<html><body>
  <div id="wayfinding-breadcrumbs_feature_div"><li>Kitchen</li></div>
  <span id="productTitle">Coffee Mug</span>
</body></html>
"""


class FakeFetcher:
    def __init__(
        self,
        pages: dict[str, str],
        fail: set[str] | None = None,
        redirects: dict[str, str] | None = None,
    ) -> None:
        self.pages = pages
        self.fail = fail or set()
        self.redirects = redirects or {}
        self.requested: list[str] = []

    def fetch(self, url: str) -> FetchedPage:
        self.requested.append(url)
        if url in self.fail:
            raise FetchError(url, "HTTP 503", status=503)
        final_url = self.redirects.get(url, url)
        return FetchedPage(url=url, final_url=final_url, status=200, html=self.pages.get(final_url, ""))

    def shutdown(self) -> None:
        pass


def _dp(asin: str) -> str:
    return f"{BASE}/dp/{asin}"


def _site() -> FakeFetcher:
    listing = "".join(
        f'<a href="/Tee/dp/{asin}/ref=zg">x</a>' for asin in ("B0MERCH001", "B0PLAIN001", "B0BROKEN01")
    )
    return FakeFetcher(
        {
            listing_url(BASE, "/zgbs/fashion", 1): listing,
            _dp("B0MERCH001"): _merch_page("B0MERCH001", bsr=1200, variants=("B0MERCH002",)),
            _dp("B0MERCH002"): _merch_page("B0MERCH002", bsr=3400, variants=("B0MERCH001",)),
            _dp("B0PLAIN001"): PLAIN_PAGE,
            _dp("B0OLD00001"): _merch_page("B0OLD00001", bsr=50),
        },
        fail={_dp("B0BROKEN01")},
    )


def _service(store, fetcher, *, context=None, bypass_limits=False, **overrides) -> CrawlService:
    effective = build_effective_settings({**SETTINGS, **overrides}, {}, bypass_limits=bypass_limits)
    return CrawlService(
        store=store,
        fetcher=fetcher,
        settings=effective,
        context=context or RunContext.create(clock=lambda: NOW),
        base_url=BASE,
    )


def test_crawl_run_discovers_scrapes_and_tracks_state() -> None:
    store = MemoryStore()
    store.save_crawl_state(CrawlState(asin="B0OLD00001", priority=3, next_due=NOW - timedelta(hours=1)))

    summary = _service(store, _site()).run()

    assert summary.candidates == 3
    assert summary.recrawl == 1
    assert summary.processed == 5
    assert summary.saved == 3
    assert summary.inserted == 3
    assert summary.skipped == 1
    assert summary.failed == 1
    assert summary.variants_queued == 1
    assert summary.cancelled is False
    assert summary.finished_at == NOW
    assert store.list_product_asins() == ["B0MERCH001", "B0MERCH002", "B0OLD00001"]

    product = store.get_product("B0MERCH001")
    assert product.bsr == 1200
    assert product.bsr_category == "Clothing"
    assert product.price_cents == 1999
    assert product.merch_flag_source == "badge/byline"
    assert product.first_seen == NOW

    merch_state = store.get_crawl_state("B0MERCH001")
    assert merch_state.discovery_source == "zgbs"
    assert merch_state.next_due == NOW + timedelta(hours=24)
    assert store.get_crawl_state("B0MERCH002").discovery_source == "variant"
    assert store.get_crawl_state("B0PLAIN001").last_hash == UNSAVABLE_HASH
    assert store.get_crawl_state("B0BROKEN01").fail_count == 1
    assert store.get_crawl_state("B0OLD00001").next_due == NOW + timedelta(hours=168)
    assert len(store.history) == 3


def test_second_run_skips_items_that_are_not_due() -> None:
    store = MemoryStore()
    _service(store, _site()).run()

    fetcher = _site()
    summary = _service(store, fetcher).run()

    assert summary.processed == 0
    assert all("/dp/" not in url for url in fetcher.requested)


def test_max_items_per_run_caps_saved_products() -> None:
    store = MemoryStore()

    summary = _service(store, _site(), bypass_limits=True, max_items_per_run=1).run()

    assert summary.saved == 1
    assert summary.processed == 1
    assert store.list_product_asins() == ["B0MERCH001"]


def test_storage_errors_are_counted_and_the_run_continues() -> None:
    class LockedStore(MemoryStore):
        def upsert_product(self, snapshot):
            raise sqlite3.OperationalError("database is locked")

    store = LockedStore()

    summary = _service(store, _site()).run()

    assert summary.saved == 0
    assert summary.failed == 3
    assert summary.skipped == 1


def test_crawl_state_write_error_fails_only_that_item() -> None:
    class FlakyStateStore(MemoryStore):
        def save_crawl_state(self, state):
            if state.asin == "B0MERCH001" and state.last_hash is not None:
                raise sqlite3.OperationalError("disk I/O error")
            super().save_crawl_state(state)

    store = FlakyStateStore()
    store.save_crawl_state(CrawlState(asin="B0OLD00001", priority=3, next_due=NOW - timedelta(hours=1)))

    summary = _service(store, _site()).run()

    assert summary.processed == 5
    assert summary.saved == 2
    assert summary.failed == 2
    assert summary.skipped == 1
    assert store.get_crawl_state("B0MERCH002").last_hash is not None
    assert store.get_crawl_state("B0OLD00001").next_due == NOW + timedelta(hours=168)


def test_unexpected_parse_error_fails_only_that_item(monkeypatch) -> None:
    from merchwatch.crawler import service as crawl_service

    real_extract = crawl_service.extract_product

    def extract(html, url, **kwargs):
        if url.endswith("/B0PLAIN001"):
            raise ValueError("unexpected markup")
        return real_extract(html, url, **kwargs)

    monkeypatch.setattr(crawl_service, "extract_product", extract)
    store = MemoryStore()

    summary = _service(store, _site()).run()

    assert summary.failed == 2
    assert summary.skipped == 0
    assert summary.saved == 2
    assert store.list_product_asins() == ["B0MERCH001", "B0MERCH002"]


def test_deeply_nested_jsonld_does_not_abort_the_run() -> None:
    nested = f"""
    <html><body>
      <div id="wayfinding-breadcrumbs_feature_div"><li>Clothing, Shoes &amp; Jewelry</li></div>
      <span id="productTitle">Nested Tee</span>
      <script type="application/ld+json">{"[" * 5000}</script>
    </body></html>
    """
    fetcher = _site()
    fetcher.pages[_dp("B0PLAIN001")] = nested
    store = MemoryStore()

    summary = _service(store, fetcher).run()

    assert summary.skipped == 1
    assert summary.saved == 2
    assert store.get_crawl_state("B0PLAIN001").last_hash == UNSAVABLE_HASH


def test_redirected_product_tracks_landing_asin() -> None:
    listing = '<a href="/Tee/dp/B0CHILD001/ref=zg">x</a>'
    fetcher = FakeFetcher(
        {
            listing_url(BASE, "/zgbs/fashion", 1): listing,
            _dp("B0PARENT01"): _merch_page("B0PARENT01", bsr=700),
        },
        redirects={_dp("B0CHILD001"): _dp("B0PARENT01")},
    )
    store = MemoryStore()

    summary = _service(store, fetcher).run()

    assert summary.saved == 1
    assert store.list_product_asins() == ["B0PARENT01"]
    parent = store.get_crawl_state("B0PARENT01")
    child = store.get_crawl_state("B0CHILD001")
    assert parent.discovery_source == "zgbs"
    assert parent.last_hash is not None
    assert parent.last_hash != UNSAVABLE_HASH
    assert child.last_hash == parent.last_hash
    assert [url for url in fetcher.requested if "/dp/" in url] == [_dp("B0CHILD001")]


def test_cancelled_context_stops_before_any_work() -> None:
    store = MemoryStore()
    store.save_crawl_state(CrawlState(asin="B0OLD00001", priority=0, next_due=NOW))
    context = RunContext.create(clock=lambda: NOW)
    context.cancel()
    fetcher = _site()

    summary = _service(store, fetcher, context=context).run()

    assert summary.cancelled is True
    assert summary.processed == 0
    assert fetcher.requested == []


def test_has_moved() -> None:
    old = ProductSnapshot(asin="B0X", url="u", first_seen=NOW, last_seen=NOW, bsr=500, reviews_count=10)

    assert has_moved(None, old) is False
    assert has_moved(old, ProductSnapshot(asin="B0X", url="u", first_seen=NOW, last_seen=NOW, bsr=400)) is True
    assert has_moved(
        old, ProductSnapshot(asin="B0X", url="u", first_seen=NOW, last_seen=NOW, bsr=600, reviews_count=11)
    ) is True
    assert has_moved(
        old, ProductSnapshot(asin="B0X", url="u", first_seen=NOW, last_seen=NOW, bsr=600, reviews_count=10)
    ) is False
