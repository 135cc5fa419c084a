from __future__ import annotations

from typing import Iterable
from urllib.parse import urlencode

from bs4 import BeautifulSoup

from merchwatch.config.models import DEFAULT_BASE_URL, CrawlerSettings
from merchwatch.crawler.engines import FetchError, PageFetcher
from merchwatch.crawler.models import Candidate, SourceTag
from merchwatch.crawler.utils import asin_from_url, canonicalize_url, normalize_whitespace
from merchwatch.logger import get_logger
from merchwatch.runtime.context import RunCancelled, RunContext

logger = get_logger(__name__)

LINK_SELECTOR = "a[href*='/dp/'], a[href*='/gp/product/']"
CARD_SELECTOR = "[data-asin]"


def listing_url(base_url: str, path: str, page: int) -> str:
    path = path if path.startswith("/") else f"/{path}"
    separator = "&" if "?" in path else "?"
    return f"{base_url.rstrip('/')}{path}{separator}pg={page}"


def hidden_keywords_clause(include: Iterable[str], exclude: Iterable[str]) -> str:
    """``["dog"], ["cat"]`` -> ``"dog -cat"``."""
    terms = [normalize_whitespace(term) for term in include]
    terms += [f"-{normalize_whitespace(term).lstrip('-')}" for term in exclude]
    return " ".join(term for term in terms if term and term != "-")


def search_url(
    base_url: str,
    keyword: str,
    page: int,
    *,
    category: str | None = None,
    sort: str | None = None,
    rh: str | None = None,
    include: Iterable[str] = (),
    exclude: Iterable[str] = (),
    marketplace_id: str | None = None,
) -> str:
    """Search results URL.

    Without an explicit ``rh`` filter the results are limited to listings
    sold by ``marketplace_id``.
    """
    params: list[tuple[str, str]] = [("k", normalize_whitespace(keyword))]
    if category:
        params.append(("i", category))
    if sort:
        params.append(("s", sort))
    if rh:
        params.append(("rh", rh))
    elif marketplace_id:
        params.append(("rh", f"p_6:{marketplace_id}"))
    hidden = hidden_keywords_clause(include, exclude)
    if hidden:
        params.append(("hidden-keywords", hidden))
    params.append(("page", str(page)))
    return f"{base_url.rstrip('/')}/s?{urlencode(params)}"


def extract_candidate_urls(html: str, base_url: str = DEFAULT_BASE_URL) -> list[str]:
    """Pulls every product-detail link off a listing page, canonicalized, in page order."""
    soup = BeautifulSoup(html or "", "lxml")
    urls: list[str] = []
    seen: set[str] = set()

    def add(url: str | None) -> None:
        if url and url not in seen:
            seen.add(url)
            urls.append(url)

    for anchor in soup.select(LINK_SELECTOR):
        add(canonicalize_url(str(anchor.get("href") or ""), base_url))
    for card in soup.select(CARD_SELECTOR):
        asin = str(card.get("data-asin") or "").strip().upper()
        if len(asin) == 10 and asin.isalnum():
            add(canonicalize_url(f"/dp/{asin}", base_url))
    return urls


class CandidateDiscoverer:
    """Sweeps best-seller, new-release, movers and search listings for product links."""

    def __init__(
        self,
        fetcher: PageFetcher,
        settings: CrawlerSettings,
        context: RunContext,
        *,
        base_url: str = DEFAULT_BASE_URL,
    ) -> None:
        self.fetcher = fetcher
        self.settings = settings
        self.context = context
        self.base_url = base_url.rstrip("/")

    def _sources(self) -> Iterable[tuple[SourceTag, list[str]]]:
        settings = self.settings
        if settings.use_best_sellers:
            yield "zgbs", [
                listing_url(self.base_url, path, page)
                for path in settings.zgbs_paths
                for page in range(1, settings.zgbs_pages + 1)
            ]
        if settings.use_new_releases:
            yield "new", [
                listing_url(self.base_url, path, page)
                for path in settings.new_paths
                for page in range(1, settings.new_pages + 1)
            ]
        if settings.use_movers:
            yield "movers", [
                listing_url(self.base_url, path, page)
                for path in settings.movers_paths
                for page in range(1, settings.movers_pages + 1)
            ]
        if settings.use_search:
            keywords = settings.search_keywords or ([""] if settings.hidden_include else [])
            yield "search", [
                search_url(
                    self.base_url,
                    keyword,
                    page,
                    category=settings.search_category,
                    sort=settings.search_sort,
                    rh=settings.search_rh,
                    include=settings.hidden_include,
                    exclude=settings.hidden_exclude,
                    marketplace_id=settings.marketplace_id,
                )
                for keyword in keywords
                for page in range(1, settings.search_pages + 1)
            ]

    def discover(self, budget: int | None = None) -> list[Candidate]:
        """Returns unique candidates (first source wins), at most ``budget`` of them."""
        limit = budget if budget is not None else self.settings.max_items_per_run
        found: dict[str, Candidate] = {}
        pages_fetched = 0
        pages_failed = 0
        for source, urls in self._sources():
            for url in urls:
                if len(found) >= limit or self.context.should_stop:
                    break
                if pages_fetched and not self.context.jitter_sleep(self.settings.page_delay):
                    break
                pages_fetched += 1
                try:
                    page = self.fetcher.fetch(url)
                except FetchError as exc:
                    pages_failed += 1
                    logger.warning(
                        "Listing page skipped",
                        extra={"url": url, "source": source, "error": str(exc)},
                    )
                    continue
                except RunCancelled:
                    break
                links = extract_candidate_urls(page.html, self.base_url)
                if not links:
                    logger.info("Listing page has no product links", extra={"url": url})
                for link in links:
                    asin = asin_from_url(link)
                    if asin and asin not in found:
                        found[asin] = Candidate(url=link, asin=asin, source=source)
                        if len(found) >= limit:
                            break
        logger.info(
            "Discovery finished",
            extra={
                "candidates": len(found),
                "pages_fetched": pages_fetched,
                "pages_failed": pages_failed,
            },
        )
        return list(found.values())
