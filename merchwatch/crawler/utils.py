from __future__ import annotations

import hashlib
import json
import random
import re
from typing import Any, Iterable
from urllib.parse import urljoin, urlparse

from merchwatch.config.models import DEFAULT_BASE_URL, NetworkConfig

ASIN_RE = re.compile(r"^[A-Z0-9]{10}$")
_ASIN_PATH_RE = re.compile(
    r"/(?:dp|gp/product|gp/aw/d|product)/([A-Za-z0-9]{10})(?=[/?#]|$)"
)
_WHITESPACE_RE = re.compile(r"\s+")
_MONEY_RE = re.compile(r"[^\d.]")


def normalize_whitespace(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE_RE.sub(" ", value.replace("\xa0", " ")).strip()


def _host(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def asin_from_url(url: str | None) -> str | None:
    if not url:
        return None
    match = _ASIN_PATH_RE.search(urlparse(url).path)
    return match.group(1).upper() if match else None


def canonicalize_url(raw_url: str | None, base_url: str = DEFAULT_BASE_URL) -> str | None:
    """Maps any product link to ``{base}/dp/{ASIN}``.

    Relative links are resolved against ``base_url``; links to another
    marketplace domain or without an ASIN yield None.
    """
    if not raw_url:
        return None
    base = base_url.rstrip("/")
    absolute = urljoin(base + "/", raw_url.strip())
    parsed = urlparse(absolute)
    if parsed.scheme not in {"http", "https"} or _host(absolute) != _host(base):
        return None
    asin = asin_from_url(absolute)
    if not asin:
        return None
    return f"{base}/dp/{asin}"


def product_url(asin: str, base_url: str = DEFAULT_BASE_URL) -> str:
    return f"{base_url.rstrip('/')}/dp/{asin}"


def money_to_cents(value: str | None) -> int | None:
    """``"$12.99"`` -> 1299. None for empty or unparseable strings."""
    if value is None:
        return None
    cleaned = _MONEY_RE.sub("", str(value))
    if not cleaned:
        return None
    try:
        return int(round(float(cleaned) * 100))
    except ValueError:
        return None


def pick_user_agent(network: NetworkConfig) -> str:
    return random.choice(network.user_agents)


def content_hash(fields: Iterable[Any]) -> str:
    """Stable SHA-256 over the tracked snapshot fields."""
    payload = json.dumps(list(fields), separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
