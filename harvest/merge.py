"""In-memory merging of product collections, keyed by product id.

The dataset files are always rewritten whole; everything that decides
which record survives happens here, on lists loaded into memory.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Set

from harvest.models import Product, ProductImage

__all__ = [
    "index_by_id",
    "dedupe_by_id",
    "merge_products",
    "apply_image_updates",
]

# Descriptive fields a listing-only (quick) crawl leaves empty
_DETAIL_FIELDS = ("description", "designer", "dimensions", "subcategory")


def index_by_id(products: Iterable[Product]) -> Dict[str, int]:
    """Map product id -> position of its first occurrence."""
    index: Dict[str, int] = {}
    for i, product in enumerate(products):
        index.setdefault(product.id, i)
    return index


def dedupe_by_id(products: Iterable[Product]) -> List[Product]:
    """Keep the first record seen for each id, preserving order."""
    seen = set()
    unique: List[Product] = []
    for product in products:
        if product.id in seen:
            continue
        seen.add(product.id)
        unique.append(product)
    return unique


def _merge_one(existing: Product, incoming: Product, keep_images: bool = False) -> Product:
    """Incoming values win, except where they would blank out stored data."""
    if keep_images and existing.images:
        incoming.images = list(existing.images)
    for attr in _DETAIL_FIELDS:
        if not getattr(incoming, attr) and getattr(existing, attr):
            setattr(incoming, attr, getattr(existing, attr))
    if not incoming.images and existing.images:
        incoming.images = list(existing.images)
    if not incoming.url and existing.url:
        incoming.url = existing.url
    for key, value in existing.extra.items():
        incoming.extra.setdefault(key, value)
    return incoming


def merge_products(
    existing: List[Product],
    incoming: List[Product],
    fresh_image_ids: Optional[Set[str]] = None,
) -> List[Product]:
    """Merge a fresh crawl into previously stored products.

    The result lists the crawled products in crawl order, followed by
    stored products the crawl didn't see, in their previous order. A
    product missing from a crawl is never dropped.

    When ``fresh_image_ids`` is given, only those products may replace
    stored images; the rest (listing thumbnails from a quick crawl or a
    failed detail fetch) keep what was stored.
    """
    stored = {p.id: p for p in dedupe_by_id(existing)}
    merged: List[Product] = []
    for product in dedupe_by_id(incoming):
        previous = stored.pop(product.id, None)
        if previous is None:
            merged.append(product)
            continue
        keep = fresh_image_ids is not None and product.id not in fresh_image_ids
        merged.append(_merge_one(previous, product, keep_images=keep))
    merged.extend(p for p in dedupe_by_id(existing) if p.id in stored)
    return merged


def apply_image_updates(
    products: List[Product],
    updates: Mapping[str, List[ProductImage]],
) -> int:
    """Replace image sets by product id. Returns how many products changed.

    Empty image lists are ignored; an update never leaves a product with
    fewer than one image.
    """
    index = index_by_id(products)
    applied = 0
    for product_id, images in updates.items():
        pos = index.get(product_id)
        if pos is None or not images:
            continue
        products[pos].images = list(images)
        applied += 1
    return applied
