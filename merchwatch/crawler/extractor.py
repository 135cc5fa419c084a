from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from merchwatch.config.models import DEFAULT_BASE_URL, DEFAULT_PRODUCT_TYPE
from merchwatch.crawler.models import ExtractionResult, MerchVerdict, ProductRecord
from merchwatch.crawler.utils import (
    ASIN_RE,
    asin_from_url,
    canonicalize_url,
    money_to_cents,
    normalize_whitespace,
    product_url,
)
from merchwatch.logger import get_logger

logger = get_logger(__name__)

# Every markup assumption about the product detail page lives in this module.
TITLE_SELECTOR = "#productTitle"
BYLINE_SELECTOR = "#bylineInfo, #brand, .po-badges, #centerCol"
SELLER_SELECTOR = "#merchant-info, #tabular-buybox, #shipsFromSoldBy_feature_div"
DETAILS_SELECTOR = (
    "#productDetails_techSpec_section_1, "
    "#productDetails_detailBullets_sections1, "
    "#detailBulletsWrapper_feature_div"
)
BREADCRUMB_SELECTOR = "#wayfinding-breadcrumbs_feature_div, .a-breadcrumb, #nav-subnav"
PRICE_SELECTOR = "#corePrice_feature_div .a-offscreen, .a-price .a-offscreen"
RATING_SELECTOR = "span[data-hook='rating-out-of-text'], i.a-icon-star span.a-icon-alt"
REVIEWS_SELECTOR = "#acrCustomerReviewText, a[data-hook='see-all-reviews-link-foot']"
BULLETS_SELECTOR = "#feature-bullets li:not(.aok-hidden)"
VARIATION_SELECTOR = (
    "#twister .selection, #variation_style_name .selection, "
    "[id^='inline-twister-expanded-dimension-text']"
)
BSR_REGIONS = (
    "#detailBulletsWrapper_feature_div",
    "#detailBullets_feature_div",
    "#productDetails_detailBullets_sections1",
    "#productDetails_techSpec_section_1",
    "#prodDetails",
    "#SalesRank",
    "body",
)

MERCH_PHRASES = ("merch on demand", "merch by amazon")
FASHION_KEYWORDS = (
    "clothing",
    "fashion",
    "apparel",
    "novelty",
    "shirt",
    "shirts",
    "t-shirt",
    "t-shirts",
    "hoodies",
    "sweatshirts",
    "tops",
    "tees",
)
BULLET_BOILERPLATE = ("about this item", "from the brand", "see more product details")
MAX_BULLETS = 2
MAX_SCRIPT_SCAN_CHARS = 200_000
# Tags that end a line of text; inline tags are joined without a separator.
BLOCK_TAGS = frozenset(
    {"br", "div", "li", "ul", "ol", "p", "table", "tr", "td", "th", "section",
     "h1", "h2", "h3", "h4", "h5", "h6"}
)

_BSR_RE = re.compile(r"Best Sellers Rank\s*:?\s*#([\d,]+)\s+in\s+([^\n(#]+)", re.IGNORECASE)
_SELLER_RE = re.compile(r"(sold by|seller\s*:?)\s*merch on demand")
_MANUFACTURER_RE = re.compile(r"(manufacturer|brand)\s*:?\s*merch on demand")
_FASHION_RE = re.compile(
    r"\b(" + "|".join(re.escape(word) for word in FASHION_KEYWORDS) + r")\b"
)
_JSON_ASIN_RE = re.compile(r'"asin"\s*:\s*"([A-Z0-9]{10})"', re.IGNORECASE)
_CHILD_ASINS_RE = re.compile(r'"childAsins"\s*:\s*\[([^\]]*)\]', re.IGNORECASE)
_QUOTED_ASIN_RE = re.compile(r'"([A-Z0-9]{10})"')
_DP_PATH_RE = re.compile(r"/dp/([A-Z0-9]{10})")
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
_WS_RE = re.compile(r"\s+")
_BRAND_PREFIX_RE = re.compile(r"^(visit the\s+|brand:\s*)", re.IGNORECASE)
_BRAND_SUFFIX_RE = re.compile(r"\s+store$", re.IGNORECASE)

PRODUCT_TYPE_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("hoodie", re.compile(r"\bhood(ie|ies|ed)\b")),
    ("sweatshirt", re.compile(r"\bsweatshirts?\b|\bcrew[\s-]?necks?\b")),
    ("long-sleeve", re.compile(r"\blong[\s-]?sleeves?\b")),
    ("raglan", re.compile(r"\braglans?\b|\bbaseball (tee|shirt)s?\b")),
    ("v-neck", re.compile(r"\bv[\s-]?necks?\b")),
    ("tank-top", re.compile(r"\btank(\s*tops?)?\b|\btanks\b|\bsleeveless\b")),
    ("tshirt", re.compile(r"\bt[\s-]?shirts?\b|\btees?\b|\bshirts?\b")),
)


def _lower_text(soup: BeautifulSoup | Tag, selector: str) -> str:
    return " ".join(
        normalize_whitespace(node.get_text(" ")) for node in soup.select(selector)
    ).lower()


def _has_logo(soup: BeautifulSoup) -> bool:
    for image in soup.find_all("img"):
        token = f"{image.get('alt') or ''} {image.get('src') or ''}".lower()
        compact = re.sub(r"[^a-z]", "", token)
        if "merchondemand" in compact:
            return True
    return False


def _has_badge(soup: BeautifulSoup) -> bool:
    text = _lower_text(soup, BYLINE_SELECTOR)
    return any(phrase in text for phrase in MERCH_PHRASES)


def _has_seller(soup: BeautifulSoup) -> bool:
    return bool(_SELLER_RE.search(_lower_text(soup, SELLER_SELECTOR)))


def _has_manufacturer(soup: BeautifulSoup) -> bool:
    return bool(_MANUFACTURER_RE.search(_lower_text(soup, DETAILS_SELECTOR)))


def _jsonld_brand_values(node: Any) -> Iterable[str]:
    if isinstance(node, list):
        for item in node:
            yield from _jsonld_brand_values(item)
        return
    if not isinstance(node, dict):
        return
    for key in ("brand", "manufacturer"):
        value = node.get(key)
        if isinstance(value, dict):
            value = value.get("name")
        if isinstance(value, str):
            yield value
    graph = node.get("@graph")
    if graph:
        yield from _jsonld_brand_values(graph)


def _has_jsonld_brand(soup: BeautifulSoup) -> bool:
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            payload = json.loads(script.get_text() or "null")
            values = list(_jsonld_brand_values(payload))
        except (json.JSONDecodeError, RecursionError, ValueError):
            # Malformed or pathologically nested blocks carry no usable brand.
            continue
        for value in values:
            if any(phrase in value.lower() for phrase in MERCH_PHRASES):
                return True
    return False


@dataclass(slots=True, frozen=True)
class MerchSignal:
    tag: str
    predicate: Callable[[BeautifulSoup], bool]


# Evaluated in order; the first match decides the provenance tag.
MERCH_SIGNALS: tuple[MerchSignal, ...] = (
    MerchSignal("logo", _has_logo),
    MerchSignal("badge/byline", _has_badge),
    MerchSignal("seller", _has_seller),
    MerchSignal("manufacturer", _has_manufacturer),
    MerchSignal("jsonld", _has_jsonld_brand),
)


def merch_verdict(fashion_context: bool, signal_tag: str | None) -> MerchVerdict:
    """Both the apparel context and a merch signal are required."""
    if not fashion_context or signal_tag is None:
        return MerchVerdict(is_merch=False, source=None, fashion_context=fashion_context)
    return MerchVerdict(is_merch=True, source=signal_tag, fashion_context=True)


def first_merch_signal(soup: BeautifulSoup) -> str | None:
    for signal in MERCH_SIGNALS:
        if signal.predicate(soup):
            return signal.tag
    return None


def breadcrumbs(soup: BeautifulSoup) -> list[str]:
    crumbs: list[str] = []
    for container in soup.select(BREADCRUMB_SELECTOR):
        items = container.select("li") or [container]
        for item in items:
            text = normalize_whitespace(item.get_text(" "))
            if text and text not in {"›", ">"}:
                crumbs.append(text)
        category = container.get("data-category")
        if category:
            crumbs.append(str(category))
    return crumbs


def has_fashion_context(soup: BeautifulSoup) -> bool:
    text = " ".join(breadcrumbs(soup)).lower()
    return bool(_FASHION_RE.search(text))


def detect_merch(soup: BeautifulSoup) -> MerchVerdict:
    return merch_verdict(has_fashion_context(soup), first_merch_signal(soup))


def parse_bsr_text(text: str) -> tuple[int | None, str | None]:
    """Finds ``Best Sellers Rank #<n> in <category>`` in plain text."""
    match = _BSR_RE.search(text.replace("\xa0", " "))
    if not match:
        return None, None
    rank = int(match.group(1).replace(",", ""))
    category = normalize_whitespace(match.group(2)).rstrip(" :,") or None
    return rank, category


def _block_text(region: Tag) -> str:
    """Text of ``region`` with a newline at every block boundary only."""
    parts: list[str] = []
    for node in region.descendants:
        if isinstance(node, Tag):
            if node.name in BLOCK_TAGS:
                parts.append("\n")
        elif isinstance(node, NavigableString) and not isinstance(node, Comment):
            if node.parent is not None and node.parent.name in ("script", "style"):
                continue
            parts.append(_WS_RE.sub(" ", str(node)))
    return "".join(parts)


def parse_bsr(soup: BeautifulSoup) -> tuple[int | None, str | None]:
    for selector in BSR_REGIONS:
        for region in soup.select(selector):
            rank, category = parse_bsr_text(_block_text(region))
            if rank is not None:
                return rank, category
    return None, None


def extract_feature_bullets(soup: BeautifulSoup, limit: int = MAX_BULLETS) -> list[str]:
    bullets: list[str] = []
    for item in soup.select(BULLETS_SELECTOR):
        text = normalize_whitespace(item.get_text(" "))
        if not text or text.lower() in BULLET_BOILERPLATE or text in bullets:
            continue
        bullets.append(text)
        if len(bullets) >= limit:
            break
    return bullets


def _asins_in_blob(blob: str) -> Iterable[str]:
    blob = blob[:MAX_SCRIPT_SCAN_CHARS]
    yield from _JSON_ASIN_RE.findall(blob)
    for group in _CHILD_ASINS_RE.findall(blob):
        yield from _QUOTED_ASIN_RE.findall(group)
    yield from _DP_PATH_RE.findall(blob)


def harvest_variant_asins(soup: BeautifulSoup, base_asin: str | None) -> list[str]:
    """Collects sibling ASINs from twister attributes and embedded JSON."""
    found: list[str] = []

    def add(candidate: str) -> None:
        asin = candidate.upper()
        if ASIN_RE.match(asin) and asin != base_asin and asin not in found:
            found.append(asin)

    for node in soup.find_all(True):
        for name, value in node.attrs.items():
            if not name.startswith("data-") or not isinstance(value, str):
                continue
            if name in {"data-defaultasin", "data-dp-url"} or value.lstrip()[:1] in {"{", "["}:
                for asin in _asins_in_blob(value):
                    add(asin)
                if name == "data-defaultasin":
                    add(value.strip())
    for script in soup.find_all("script"):
        script_type = (script.get("type") or "text/javascript").lower()
        if "ld+json" in script_type:
            continue
        text = script.string or script.get_text() or ""
        if "asin" not in text.lower():
            continue
        for asin in _asins_in_blob(text):
            add(asin)
    return found


def classify_product_type(
    title: str | None,
    bullets: Iterable[str | None] = (),
    crumbs: Iterable[str] = (),
    variations: Iterable[str] = (),
) -> str:
    haystack = " ".join(
        part for part in (title, *bullets, *crumbs, *variations) if part
    ).lower()
    for product_type, pattern in PRODUCT_TYPE_RULES:
        if pattern.search(haystack):
            return product_type
    return DEFAULT_PRODUCT_TYPE


def resolve_asin(soup: BeautifulSoup, url: str, final_url: str | None = None) -> str | None:
    """Final URL first, then the hidden ASIN form field, then the requested URL."""
    from_final = asin_from_url(final_url)
    if from_final:
        return from_final
    hidden = soup.select_one("input#ASIN, input[name='ASIN']")
    if hidden is not None:
        value = str(hidden.get("value") or "").strip().upper()
        if ASIN_RE.match(value):
            return value
    return asin_from_url(url)


def _first_text(soup: BeautifulSoup, selector: str) -> str | None:
    node = soup.select_one(selector)
    if node is None:
        return None
    return normalize_whitespace(node.get_text(" ")) or None


def _parse_rating(text: str | None) -> float | None:
    if not text:
        return None
    match = _NUMBER_RE.search(text)
    if not match:
        return None
    value = float(match.group(0))
    return value if 0 <= value <= 5 else None


def _parse_count(text: str | None) -> int | None:
    digits = re.sub(r"[^\d]", "", text or "")
    return int(digits) if digits else None


def _parse_brand(text: str | None) -> str | None:
    if not text:
        return None
    brand = _BRAND_SUFFIX_RE.sub("", _BRAND_PREFIX_RE.sub("", text)).strip()
    return brand or None


def _image_url(soup: BeautifulSoup) -> str | None:
    for selector in ("#imgTagWrapperId img", "#landingImage"):
        node = soup.select_one(selector)
        if node is not None and node.get("src"):
            return str(node["src"])
    meta = soup.select_one("meta[property='og:image']")
    if meta is not None and meta.get("content"):
        return str(meta["content"])
    return None


def extract_product(
    html: str,
    url: str,
    *,
    final_url: str | None = None,
    base_url: str = DEFAULT_BASE_URL,
) -> ExtractionResult:
    """Parses one product detail page into a record plus variant ASINs.

    The record is only produced for merch listings in an apparel category;
    variants are harvested either way so that siblings can still be queued.
    """
    soup = BeautifulSoup(html or "", "lxml")
    asin = resolve_asin(soup, url, final_url)
    if asin is None:
        logger.debug("No ASIN on page", extra={"url": url, "final_url": final_url})
        return ExtractionResult(asin=None, product=None)

    variants = harvest_variant_asins(soup, asin)
    verdict = detect_merch(soup)
    if not verdict.is_merch:
        return ExtractionResult(asin=asin, product=None, variant_asins=variants, verdict=verdict)

    title = _first_text(soup, TITLE_SELECTOR)
    bullets = extract_feature_bullets(soup)
    crumbs = breadcrumbs(soup)
    variations = [
        normalize_whitespace(node.get_text(" ")) for node in soup.select(VARIATION_SELECTOR)
    ]
    bsr, bsr_category = parse_bsr(soup)
    product = ProductRecord(
        asin=asin,
        url=canonicalize_url(final_url or url, base_url) or product_url(asin, base_url),
        title=title,
        brand=_parse_brand(_first_text(soup, "#bylineInfo")),
        price_cents=money_to_cents(_first_text(soup, PRICE_SELECTOR)),
        rating=_parse_rating(_first_text(soup, RATING_SELECTOR)),
        reviews_count=_parse_count(_first_text(soup, REVIEWS_SELECTOR)),
        bsr=bsr,
        bsr_category=bsr_category,
        image_url=_image_url(soup),
        bullet1=bullets[0] if bullets else None,
        bullet2=bullets[1] if len(bullets) > 1 else None,
        merch_flag_source=verdict.source,
        product_type=classify_product_type(title, bullets, crumbs, variations),
    )
    return ExtractionResult(asin=asin, product=product, variant_asins=variants, verdict=verdict)
