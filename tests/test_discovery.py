from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

from merchwatch.config.env_loader import build_effective_settings
from merchwatch.crawler.discovery import (
    CandidateDiscoverer,
    extract_candidate_urls,
    hidden_keywords_clause,
    listing_url,
    search_url,
)
from merchwatch.crawler.engines import FetchError
from merchwatch.crawler.models import FetchedPage
from merchwatch.runtime import RunContext

BASE = "https://www.amazon.com"

NO_DELAYS = {
    "per_page_delay_ms_min": 0,
    "per_page_delay_ms_max": 0,
    "per_product_delay_ms_min": 0,
    "per_product_delay_ms_max": 0,
}

LISTING_HTML = """
<html><body>
  <div class="zg-grid">
    <a href="/Funny-Cat-Tee/dp/B0CAT00001/ref=zg_bs_1">Cat</a>
    <a href="/dp/B0CAT00001?psc=1">Cat again</a>
    <a href="https://www.amazon.com/gp/product/B0DOG00001">Dog</a>
    <a href="https://www.amazon.co.uk/dp/B0UK000001">Elsewhere</a>
    <div data-asin="B0CARD0001"></div>
    <div data-asin=""></div>
  </div>
</body></html>
"""


class FakeFetcher:
    def __init__(self, pages: dict[str, str] | None = None, fail: set[str] | None = None) -> None:
        self.pages = pages or {}
        self.fail = fail or set()
        self.requested: list[str] = []

    def fetch(self, url: str) -> FetchedPage:
        self.requested.append(url)
        if url in self.fail:
            raise FetchError(url, "HTTP 503", status=503)
        return FetchedPage(url=url, final_url=url, status=200, html=self.pages.get(url, ""))

    def shutdown(self) -> None:
        pass


def _settings(**values):
    return build_effective_settings({**NO_DELAYS, **values}, {}).settings


def test_listing_url_appends_page_param() -> None:
    assert listing_url(BASE, "/gp/new-releases/fashion", 2) == f"{BASE}/gp/new-releases/fashion?pg=2"
    assert listing_url(BASE, "zgbs/fashion?ie=UTF8", 1) == f"{BASE}/zgbs/fashion?ie=UTF8&pg=1"


def test_hidden_keywords_clause() -> None:
    assert hidden_keywords_clause(["dog lover"], ["cat", "-kids"]) == "dog lover -cat -kids"
    assert hidden_keywords_clause([], []) == ""


def test_search_url_carries_filters() -> None:
    url = search_url(
        BASE,
        " funny  shirt ",
        3,
        category="fashion-novelty",
        sort="date-desc-rank",
        rh="p_6:ATVPDKIKX0DER",
        include=["dog"],
        exclude=["cat"],
    )

    query = parse_qs(urlsplit(url).query)
    assert urlsplit(url).path == "/s"
    assert query == {
        "k": ["funny shirt"],
        "i": ["fashion-novelty"],
        "s": ["date-desc-rank"],
        "rh": ["p_6:ATVPDKIKX0DER"],
        "hidden-keywords": ["dog -cat"],
        "page": ["3"],
    }


def test_search_url_filters_by_marketplace_seller_unless_rh_given() -> None:
    default = parse_qs(urlsplit(search_url(BASE, "cat", 1, marketplace_id="A1EXAMPLE")).query)
    explicit = parse_qs(
        urlsplit(search_url(BASE, "cat", 1, rh="n:7141123011", marketplace_id="A1EXAMPLE")).query
    )

    assert default["rh"] == ["p_6:A1EXAMPLE"]
    assert explicit["rh"] == ["n:7141123011"]
    assert "rh" not in parse_qs(urlsplit(search_url(BASE, "cat", 1)).query)


def test_extract_candidate_urls_canonicalizes_and_dedupes() -> None:
    assert extract_candidate_urls(LISTING_HTML, BASE) == [
        f"{BASE}/dp/B0CAT00001",
        f"{BASE}/dp/B0DOG00001",
        f"{BASE}/dp/B0CARD0001",
    ]


def test_discover_tags_first_source_and_respects_budget() -> None:
    settings = _settings(
        use_best_sellers=True,
        zgbs_paths=["/zgbs/fashion"],
        zgbs_pages=3,
        use_new_releases=True,
        new_paths=["/gp/new-releases/fashion"],
        new_pages=3,
    )
    new_page = listing_url(BASE, "/gp/new-releases/fashion", 1)
    fetcher = FakeFetcher(
        {
            listing_url(BASE, "/zgbs/fashion", 1): LISTING_HTML,
            new_page: '<a href="/dp/B0CAT00001">dup</a><a href="/dp/B0NEW00001">new</a>',
        }
    )
    discoverer = CandidateDiscoverer(fetcher, settings, RunContext.create(), base_url=BASE)

    candidates = discoverer.discover(budget=100)

    assert [(item.asin, item.source) for item in candidates] == [
        ("B0CAT00001", "zgbs"),
        ("B0DOG00001", "zgbs"),
        ("B0CARD0001", "zgbs"),
        ("B0NEW00001", "new"),
    ]
    assert len(fetcher.requested) == 6

    limited = CandidateDiscoverer(fetcher, settings, RunContext.create(), base_url=BASE)
    assert len(limited.discover(budget=2)) == 2


def test_discover_skips_failed_pages() -> None:
    settings = _settings(use_best_sellers=True, zgbs_paths=["/a", "/b"], zgbs_pages=3)
    broken = listing_url(BASE, "/a", 1)
    fetcher = FakeFetcher(
        {listing_url(BASE, "/b", 1): '<a href="/dp/B0GOOD0001">ok</a>'},
        fail={broken},
    )

    candidates = CandidateDiscoverer(fetcher, settings, RunContext.create(), base_url=BASE).discover()

    assert broken in fetcher.requested
    assert [item.asin for item in candidates] == ["B0GOOD0001"]


def test_discover_search_uses_keywords() -> None:
    settings = _settings(
        use_best_sellers=False,
        use_search=True,
        search_keywords=["cat mom"],
        search_pages=3,
    )
    fetcher = FakeFetcher()

    CandidateDiscoverer(fetcher, settings, RunContext.create(), base_url=BASE).discover()

    assert len(fetcher.requested) == 3
    assert all(parse_qs(urlsplit(url).query)["k"] == ["cat mom"] for url in fetcher.requested)
    assert all(
        parse_qs(urlsplit(url).query)["rh"] == ["p_6:ATVPDKIKX0DER"] for url in fetcher.requested
    )


def test_discover_stops_when_cancelled() -> None:
    settings = _settings(use_best_sellers=True, zgbs_paths=["/a"], zgbs_pages=3)
    context = RunContext.create()
    context.cancel()
    fetcher = FakeFetcher()

    assert CandidateDiscoverer(fetcher, settings, context, base_url=BASE).discover() == []
    assert fetcher.requested == []
