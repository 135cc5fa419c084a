from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from merchwatch.crawler.models import ProductRecord
from merchwatch.logger import get_logger
from merchwatch.state.base import MerchStore
from merchwatch.state.models import HistoryRow, ProductSnapshot

logger = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class ResolvedFields:
    bsr: int | None
    bsr_category: str | None
    merch_flag_source: str | None
    product_type: str | None


@dataclass(slots=True)
class UpsertResult:
    inserted: bool
    snapshot: ProductSnapshot
    previous: ProductSnapshot | None = None


def resolve_snapshot_fields(
    existing: ProductSnapshot | None, new: ProductRecord
) -> ResolvedFields:
    """Carries stored values forward where the new crawl could not derive them.

    The category is only replaced together with a fresh rank; a page that
    shows a rank without a category keeps the stored category.
    """
    if existing is None:
        return ResolvedFields(
            bsr=new.bsr,
            bsr_category=new.bsr_category,
            merch_flag_source=new.merch_flag_source,
            product_type=new.product_type,
        )
    bsr = new.bsr if new.bsr is not None else existing.bsr
    if new.bsr is not None and new.bsr_category:
        category = new.bsr_category
    else:
        category = existing.bsr_category or new.bsr_category
    return ResolvedFields(
        bsr=bsr,
        bsr_category=category,
        merch_flag_source=new.merch_flag_source or existing.merch_flag_source,
        product_type=new.product_type or existing.product_type,
    )


class ProductPersistence:
    """Upserts the latest product snapshot and appends its history row."""

    def __init__(self, store: MerchStore) -> None:
        self.store = store

    def upsert_product(self, product: ProductRecord, *, now: datetime) -> UpsertResult:
        existing = self.store.get_product(product.asin)
        resolved = resolve_snapshot_fields(existing, product)

        def keep(new_value, old_attr: str):
            if new_value is not None or existing is None:
                return new_value
            return getattr(existing, old_attr)

        snapshot = ProductSnapshot(
            asin=product.asin,
            url=product.url,
            first_seen=existing.first_seen if existing else now,
            last_seen=now,
            title=keep(product.title, "title"),
            brand=keep(product.brand, "brand"),
            price_cents=product.price_cents,
            rating=product.rating,
            reviews_count=product.reviews_count,
            bsr=resolved.bsr,
            bsr_category=resolved.bsr_category,
            image_url=keep(product.image_url, "image_url"),
            bullet1=keep(product.bullet1, "bullet1"),
            bullet2=keep(product.bullet2, "bullet2"),
            merch_flag_source=resolved.merch_flag_source,
            product_type=resolved.product_type,
        )
        if snapshot.first_seen > snapshot.last_seen:
            snapshot.first_seen = snapshot.last_seen
        inserted = self.store.upsert_product(snapshot)
        self.store.append_history(
            HistoryRow(
                asin=product.asin,
                captured_at=now,
                price_cents=snapshot.price_cents,
                rating=snapshot.rating,
                reviews_count=snapshot.reviews_count,
                bsr=resolved.bsr,
                bsr_category=resolved.bsr_category,
                merch_flag_source=resolved.merch_flag_source,
                product_type=resolved.product_type,
            )
        )
        if inserted:
            logger.info("New merch product", extra={"asin": product.asin, "bsr": resolved.bsr})
        return UpsertResult(inserted=inserted, snapshot=snapshot, previous=existing)
