import pytest

from merchwatch.crawler.utils import (
    asin_from_url,
    canonicalize_url,
    content_hash,
    money_to_cents,
    normalize_whitespace,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("/dp/B0ABCDEF12?ref=zg_bs", "https://www.amazon.com/dp/B0ABCDEF12"),
        ("/Retro-Tee/dp/B0ABCDEF12/ref=sr_1_1?keywords=tee", "https://www.amazon.com/dp/B0ABCDEF12"),
        ("https://amazon.com/gp/product/b0abcdef12", "https://www.amazon.com/dp/B0ABCDEF12"),
        ("https://www.amazon.com/gp/aw/d/B0ABCDEF12", "https://www.amazon.com/dp/B0ABCDEF12"),
        ("https://www.amazon.co.uk/dp/B0ABCDEF12", None),
        ("/s?k=funny+shirt", None),
        ("javascript:void(0)", None),
        ("", None),
        (None, None),
    ],
)
def test_canonicalize_url(raw, expected) -> None:
    assert canonicalize_url(raw, "https://www.amazon.com") == expected


def test_asin_from_url_ignores_query_string() -> None:
    assert asin_from_url("https://www.amazon.com/s?k=/dp/B0ABCDEF12") is None
    assert asin_from_url("https://www.amazon.com/dp/B0ABCDEF12#reviews") == "B0ABCDEF12"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("$12.99", 1299),
        ("$1,024.50", 102450),
        ("USD 0.99", 99),
        ("19", 1900),
        ("", None),
        (None, None),
        ("n/a", None),
    ],
)
def test_money_to_cents(value, expected) -> None:
    assert money_to_cents(value) == expected


def test_normalize_whitespace() -> None:
    assert normalize_whitespace("  Funny\xa0 Cat\n Tee ") == "Funny Cat Tee"
    assert normalize_whitespace(None) == ""


def test_content_hash_is_stable_and_order_sensitive() -> None:
    first = content_hash([1999, 4.5, 10, 1234, "Clothing", "Tee"])

    assert first == content_hash([1999, 4.5, 10, 1234, "Clothing", "Tee"])
    assert first != content_hash([1999, 4.5, 11, 1234, "Clothing", "Tee"])
    assert len(first) == 64
