from __future__ import annotations

import re
from dataclasses import dataclass

from bs4 import BeautifulSoup, Tag

from merchwatch.crawler.extractor import classify_product_type
from merchwatch.crawler.utils import ASIN_RE, normalize_whitespace

CARD_SELECTOR = "div.s-result-item[data-asin]"
TITLE_SELECTOR = "h2 a span, h2 span"
BRAND_SELECTOR = "h5 span, span.a-size-base-plus.a-color-base"
RATING_SELECTOR = "span.a-icon-alt"
REVIEWS_SELECTOR = "span.a-size-base.s-underline-text"
MERCH_MARKERS = ("merch on demand", "merch-on-demand")

_RATING_RE = re.compile(r"([0-9]+(?:\.[0-9]+)?)")


@dataclass(slots=True)
class SerpCard:
    asin: str
    page: int
    title: str | None = None
    brand: str | None = None
    price_cents: int | None = None
    rating: float | None = None
    reviews_count: int | None = None
    is_merch: bool = False
    product_type: str | None = None


def parse_price_cents(whole: str | None, fraction: str | None) -> int | None:
    """``"12."`` + ``"9"`` -> 1290."""
    digits = re.sub(r"[^0-9]", "", whole or "")
    if not digits:
        return None
    cents = re.sub(r"[^0-9]", "", fraction or "") or "0"
    return int(digits) * 100 + int(cents.ljust(2, "0")[:2])


def _text(card: Tag, selector: str) -> str | None:
    node = card.select_one(selector)
    if node is None:
        return None
    return normalize_whitespace(node.get_text(" ")) or None


def _rating(text: str | None) -> float | None:
    match = _RATING_RE.search(text or "")
    return float(match.group(1)) if match else None


def _reviews(text: str | None) -> int | None:
    digits = re.sub(r"[^0-9]", "", text or "")
    return int(digits) if digits else None


def parse_serp_page(html: str, page: int) -> list[SerpCard]:
    """Result cards of one search page in display order."""
    soup = BeautifulSoup(html or "", "lxml")
    cards: list[SerpCard] = []
    for card in soup.select(CARD_SELECTOR):
        asin = str(card.get("data-asin") or "").strip().upper()
        if not ASIN_RE.match(asin):
            continue
        title = _text(card, TITLE_SELECTOR)
        whole = card.select_one("span.a-price-whole")
        fraction = card.select_one("span.a-price-fraction")
        card_text = card.get_text(" ").lower()
        cards.append(
            SerpCard(
                asin=asin,
                page=page,
                title=title,
                brand=_text(card, BRAND_SELECTOR),
                price_cents=parse_price_cents(
                    whole.get_text() if whole else None,
                    fraction.get_text() if fraction else None,
                ),
                rating=_rating(_text(card, RATING_SELECTOR)),
                reviews_count=_reviews(_text(card, REVIEWS_SELECTOR)),
                is_merch=any(marker in card_text for marker in MERCH_MARKERS),
                product_type=classify_product_type(title),
            )
        )
    return cards
