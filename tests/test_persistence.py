from __future__ import annotations

from datetime import datetime, timedelta, timezone

from merchwatch.crawler.models import ProductRecord
from merchwatch.state import MemoryStore
from merchwatch.state.models import ProductSnapshot
from merchwatch.state.persistence import ProductPersistence, resolve_snapshot_fields

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _record(**overrides) -> ProductRecord:
    payload = {
        "asin": "B0ABCDEF12",
        "url": "https://www.amazon.com/dp/B0ABCDEF12",
        "title": "Funny Cat Tee",
        "brand": "Cat Co",
        "price_cents": 1999,
        "rating": 4.5,
        "reviews_count": 10,
        "bsr": 1000,
        "bsr_category": "Clothing",
        "image_url": "https://m.media-amazon.com/cat.jpg",
        "bullet1": "Soft",
        "bullet2": "Classic fit",
        "merch_flag_source": "badge/byline",
        "product_type": "tshirt",
    }
    payload.update(overrides)
    return ProductRecord(**payload)


def _existing(**overrides) -> ProductSnapshot:
    payload = {
        "asin": "B0ABCDEF12",
        "url": "https://www.amazon.com/dp/B0ABCDEF12",
        "first_seen": NOW - timedelta(days=3),
        "last_seen": NOW - timedelta(days=1),
        "bsr": 1500,
        "bsr_category": "Novelty",
        "merch_flag_source": "logo",
        "product_type": "hoodie",
    }
    payload.update(overrides)
    return ProductSnapshot(**payload)


def test_resolve_without_existing_row_takes_new_values() -> None:
    resolved = resolve_snapshot_fields(None, _record(bsr=None, bsr_category=None))

    assert resolved.bsr is None
    assert resolved.bsr_category is None
    assert resolved.product_type == "tshirt"


def test_resolve_missing_rank_keeps_stored_rank_and_category() -> None:
    resolved = resolve_snapshot_fields(_existing(), _record(bsr=None, bsr_category=None))

    assert resolved.bsr == 1500
    assert resolved.bsr_category == "Novelty"


def test_resolve_rank_without_category_keeps_stored_category() -> None:
    resolved = resolve_snapshot_fields(_existing(), _record(bsr=800, bsr_category=None))

    assert resolved.bsr == 800
    assert resolved.bsr_category == "Novelty"


def test_resolve_fresh_rank_and_category_replace_both() -> None:
    resolved = resolve_snapshot_fields(_existing(), _record(bsr=800, bsr_category="Clothing"))

    assert (resolved.bsr, resolved.bsr_category) == (800, "Clothing")


def test_resolve_category_without_rank_only_fills_gap() -> None:
    kept = resolve_snapshot_fields(_existing(), _record(bsr=None, bsr_category="Clothing"))
    filled = resolve_snapshot_fields(
        _existing(bsr_category=None), _record(bsr=None, bsr_category="Clothing")
    )

    assert kept.bsr_category == "Novelty"
    assert filled.bsr_category == "Clothing"


def test_resolve_flag_and_type_fall_back_to_stored() -> None:
    resolved = resolve_snapshot_fields(
        _existing(), _record(merch_flag_source=None, product_type=None)
    )

    assert resolved.merch_flag_source == "logo"
    assert resolved.product_type == "hoodie"


def test_upsert_inserts_then_updates_with_history() -> None:
    store = MemoryStore()
    persistence = ProductPersistence(store)

    first = persistence.upsert_product(_record(), now=NOW)
    later = NOW + timedelta(hours=6)
    second = persistence.upsert_product(
        _record(title=None, bsr=None, bsr_category=None, price_cents=None, reviews_count=12),
        now=later,
    )

    assert first.inserted is True
    assert first.previous is None
    assert second.inserted is False
    assert second.previous.bsr == 1000

    stored = store.get_product("B0ABCDEF12")
    assert stored.first_seen == NOW
    assert stored.last_seen == later
    assert stored.title == "Funny Cat Tee"
    assert stored.bsr == 1000
    assert stored.bsr_category == "Clothing"
    assert stored.price_cents is None
    assert stored.reviews_count == 12

    history = store.history_since("B0ABCDEF12", NOW)
    assert [row.captured_at for row in history] == [NOW, later]
    assert history[1].bsr == 1000
    assert history[1].bsr_category == "Clothing"
    assert history[1].reviews_count == 12
