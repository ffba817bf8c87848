"""Image reconciliation: repair decayed image references in stored datasets.

Four strategies, each usable alone or chained in one pass:

1. Entity repair - decode HTML entities left in image URLs (no network).
2. Variant upgrade - swap the small representation hash for the large one
   (no network).
3. Re-fetch - fetch the product page again and take fresh image URLs.
   Batches run concurrently and each batch is awaited in full before the
   next one starts.
4. Placeholder - deterministic stand-in images for products that still
   have none, or whose signed URLs have expired.

A product's images are only ever replaced by a non-empty set, and a
failure on one product never stops the others. Whatever state a run
reaches is saved.
"""

import asyncio
import re
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple
from urllib.parse import parse_qs, urlparse

from harvest.config import (
    CATEGORY_SEEDS,
    CHUNK_BATCH_DELAY,
    CHUNK_BATCH_SIZE,
    DEFAULT_CATEGORY_SEED,
    LARGE_VARIANT,
    MAX_RETRIES,
    PLACEHOLDER_HOST,
    PLACEHOLDER_TEMPLATE,
    REFRESH_BATCH_DELAY,
    REFRESH_BATCH_SIZE,
    SIGNATURE_QUERY_PARAMS,
    SIGNED_URL_MARKERS,
    SMALL_VARIANT,
    category_key,
)
from harvest.extractor import DEFAULT_EXTRACTOR, HtmlExtractor
from harvest.fetcher import (
    FetchError,
    backoff_delay,
    create_async_session,
    fetch_html_async,
    is_retryable,
)
from harvest.logging_config import get_logger, log_pipeline_event
from harvest.merge import apply_image_updates
from harvest.models import ItemResult, Product, ProductImage
from harvest.normalizer import decode_entities, normalize_images
from harvest.store import DatasetStore

__all__ = [
    "AsyncFetcher",
    "RefetchOutcome",
    "ReconcileSummary",
    "is_signed_url",
    "is_expired_url",
    "has_expired_images",
    "is_entity_corrupted",
    "is_placeholder",
    "upgrade_variant",
    "placeholder_url",
    "repair_entities",
    "upgrade_variants",
    "assign_placeholders",
    "extract_fresh_images",
    "refetch_product_images",
    "refetch_batches",
    "reconcile_category",
    "compute_chunk_updates",
    "commit_updates",
    "reconcile_chunk",
    "run_offline_pass",
]

logger = get_logger("reconcile")

# fetch(url) -> html
AsyncFetcher = Callable[[str], Awaitable[str]]
AsyncSleep = Callable[[float], Awaitable[None]]

AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"


# =============================================================================
# Staleness detection
# =============================================================================

def _query_params(url: str) -> Dict[str, List[str]]:
    return {k.lower(): v for k, v in parse_qs(urlparse(url).query).items()}


def is_signed_url(url: str) -> bool:
    """True if the URL carries a storage signature."""
    if any(marker in url for marker in SIGNED_URL_MARKERS):
        return True
    return any(key in SIGNATURE_QUERY_PARAMS for key in _query_params(url))


def is_expired_url(url: str, now: Optional[datetime] = None) -> bool:
    """True for a signed URL whose validity window has passed.

    With X-Amz-Date and X-Amz-Expires present the window is checked
    against ``now``; a signed URL without a readable window counts as
    expired.
    """
    if not is_signed_url(url):
        return False
    params = _query_params(url)
    issued_at = params.get("x-amz-date")
    expires_in = params.get("x-amz-expires")
    if not issued_at or not expires_in:
        return True
    try:
        issued = datetime.strptime(issued_at[0], AMZ_DATE_FORMAT).replace(tzinfo=timezone.utc)
        window = timedelta(seconds=int(expires_in[0]))
    except ValueError:
        return True
    return (now or datetime.now(timezone.utc)) >= issued + window


def has_expired_images(product: Product, now: Optional[datetime] = None) -> bool:
    return any(is_expired_url(img.url, now) for img in product.images)


def is_entity_corrupted(product: Product) -> bool:
    return any("&amp;" in img.url for img in product.images)


def is_placeholder(url: str) -> bool:
    return PLACEHOLDER_HOST in url


def upgrade_variant(url: str) -> str:
    """Replace the small variant hash with the large one; nothing else changes."""
    return url.replace(SMALL_VARIANT, LARGE_VARIANT)


def placeholder_url(product_id: str, image_index: int, category: str) -> str:
    """Deterministic placeholder image for a product image slot.

    The seed is the last four digits of the product id (a CRC of the id
    when it has no digits) plus the image index, offset by a
    per-category base seed.
    """
    digits = re.sub(r"\D", "", product_id)
    if digits:
        id_seed = int(digits[-4:])
    else:
        id_seed = zlib.crc32(product_id.encode("utf-8")) % 10000
    base_seed = CATEGORY_SEEDS.get(category_key(category), DEFAULT_CATEGORY_SEED)
    return PLACEHOLDER_TEMPLATE.format(seed=base_seed + id_seed + image_index)


# =============================================================================
# Offline strategies (no network)
# =============================================================================

def repair_entities(products: Iterable[Product]) -> int:
    """Decode entities in every image URL. Returns the number of URLs changed."""
    fixed = 0
    for product in products:
        for img in product.images:
            decoded = decode_entities(img.url)
            if decoded != img.url:
                img.url = decoded
                fixed += 1
    return fixed


def upgrade_variants(products: Iterable[Product]) -> int:
    """Upgrade small-variant image URLs. Returns the number of URLs changed."""
    upgraded = 0
    for product in products:
        for img in product.images:
            if SMALL_VARIANT in img.url:
                img.url = upgrade_variant(img.url)
                upgraded += 1
    return upgraded


def assign_placeholders(
    products: Iterable[Product],
    skip_ids: Iterable[str] = (),
    now: Optional[datetime] = None,
) -> int:
    """Give placeholder images to products with none or with expired ones.

    Products in ``skip_ids`` (freshly re-fetched this run) keep their
    images even if they look signed. Returns the number of products changed.
    """
    skip = set(skip_ids)
    updated = 0
    for product in products:
        if not product.images:
            product.images = [ProductImage(
                url=placeholder_url(product.id, 0, product.category),
                alt=product.name,
            )]
            updated += 1
        elif product.id not in skip and has_expired_images(product, now):
            product.images = [
                ProductImage(
                    url=placeholder_url(product.id, i, product.category),
                    alt=img.alt or product.name,
                )
                for i, img in enumerate(product.images)
            ]
            updated += 1
    return updated


def run_offline_pass(
    store: DatasetStore,
    strategy: Callable[[List[Product]], int],
    slugs: Optional[Iterable[str]] = None,
) -> Dict[str, int]:
    """Apply an offline strategy to category documents, saving changed ones.

    Returns:
        Mapping of slug -> change count reported by the strategy
    """
    results: Dict[str, int] = {}
    for slug in slugs if slugs is not None else store.category_slugs_on_disk():
        products = store.load_category(slug)
        changed = strategy(products)
        if changed:
            store.save_category(slug, products)
        results[slug] = changed
        logger.info(f"{slug}: {changed} changed")
    return results


# =============================================================================
# Re-fetch strategy
# =============================================================================

@dataclass
class RefetchOutcome:
    """Accumulated result of re-fetching a set of products."""

    updates: Dict[str, List[ProductImage]] = field(default_factory=dict)
    updated: int = 0
    failed: int = 0
    unchanged: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.updated + self.failed + self.unchanged

    def record(self, product: Product, result: ItemResult) -> None:
        if not result.ok:
            self.failed += 1
            self.failures.append((product.id, result.error or "unknown"))
            return
        images: Optional[List[ProductImage]] = result.value
        if images and [i.url for i in images] != [i.url for i in product.images]:
            self.updates[product.id] = images
            self.updated += 1
        else:
            self.unchanged += 1


def extract_fresh_images(
    html: str,
    product_name: str,
    extractor: HtmlExtractor = DEFAULT_EXTRACTOR,
) -> List[ProductImage]:
    """Storage images found in raw markup, else the detail-page image scan."""
    images = extractor.extract_image_candidates(html, alt=product_name)
    if not images:
        images = extractor.extract_detail(html, product_name).images
    return normalize_images(images, default_alt=product_name)


async def refetch_product_images(
    product: Product,
    fetch: AsyncFetcher,
    extractor: HtmlExtractor = DEFAULT_EXTRACTOR,
    retries: int = MAX_RETRIES,
    sleep: AsyncSleep = asyncio.sleep,
) -> ItemResult:
    """Re-fetch one product page and return its fresh images.

    The result carries no value when the product has no source URL, the
    page yielded no images, or the first image is a placeholder; the
    stored images stay as they are in all of those cases.
    """
    if not product.url:
        return ItemResult(product.id)

    attempt = 0
    while True:
        try:
            html = await fetch(product.url)
            break
        except FetchError as e:
            if attempt >= retries or not is_retryable(e):
                return ItemResult(product.id, error=str(e))
            await sleep(backoff_delay(attempt))
            attempt += 1

    images = extract_fresh_images(html, product.name, extractor)
    if not images or is_placeholder(images[0].url):
        return ItemResult(product.id)
    return ItemResult(product.id, value=images)


async def refetch_batches(
    products: Sequence[Product],
    fetch: AsyncFetcher,
    outcome: Optional[RefetchOutcome] = None,
    batch_size: int = REFRESH_BATCH_SIZE,
    delay: float = REFRESH_BATCH_DELAY,
    retries: int = MAX_RETRIES,
    extractor: HtmlExtractor = DEFAULT_EXTRACTOR,
    sleep: AsyncSleep = asyncio.sleep,
    label: str = "",
) -> RefetchOutcome:
    """Re-fetch products in fixed-size concurrent batches.

    Results are folded into ``outcome`` only after each batch has fully
    settled, so callers holding ``outcome`` see every finished batch even
    if a later one is interrupted. Nothing is applied to ``products``.
    """
    outcome = outcome if outcome is not None else RefetchOutcome()
    batch_size = max(1, batch_size)
    total = len(products)

    for start in range(0, total, batch_size):
        batch = products[start:start + batch_size]
        results = await asyncio.gather(
            *(refetch_product_images(p, fetch, extractor, retries, sleep) for p in batch),
            return_exceptions=True,
        )
        for product, result in zip(batch, results):
            if isinstance(result, Exception):
                logger.warning(f"{label}Unexpected error for {product.id}: {result!r}")
                result = ItemResult(product.id, error=f"{type(result).__name__}: {result}")
            elif isinstance(result, BaseException):
                raise result
            outcome.record(product, result)

        done = min(start + batch_size, total)
        logger.info(
            f"{label}[{done}/{total}] {outcome.updated} updated, "
            f"{outcome.failed} failed, {outcome.unchanged} unchanged"
        )
        log_pipeline_event("refetch_batch", {
            "label": label.strip(),
            "processed": done,
            "total": total,
            "updated": outcome.updated,
            "failed": outcome.failed,
            "unchanged": outcome.unchanged,
        }, logger_name="reconcile")

        if done < total:
            await sleep(delay)

    return outcome


async def _refetch_with_session(
    products: Sequence[Product],
    outcome: RefetchOutcome,
    fetch: Optional[AsyncFetcher],
    **kwargs,
) -> RefetchOutcome:
    """Run refetch_batches, opening an aiohttp session if no fetcher is given."""
    if fetch is not None:
        return await refetch_batches(products, fetch, outcome, **kwargs)

    async with create_async_session() as session:
        async def fetch_page(url: str) -> str:
            return await fetch_html_async(session, url)

        return await refetch_batches(products, fetch_page, outcome, **kwargs)


# =============================================================================
# Whole-category and chunked runs
# =============================================================================

@dataclass
class ReconcileSummary:
    """Counts reported at the end of a reconciliation run."""

    slug: str
    total: int = 0
    updated: int = 0
    failed: int = 0
    unchanged: int = 0
    entities_fixed: int = 0
    variants_upgraded: int = 0
    placeholders: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)
    chunk_id: Optional[str] = None

    def absorb(self, outcome: RefetchOutcome) -> None:
        self.updated += outcome.updated
        self.failed += outcome.failed
        self.unchanged += outcome.unchanged
        self.failures.extend(outcome.failures)

    def to_dict(self) -> Dict[str, object]:
        return {
            "category": self.slug,
            "chunk": self.chunk_id,
            "total": self.total,
            "updated": self.updated,
            "failed": self.failed,
            "unchanged": self.unchanged,
            "entities_fixed": self.entities_fixed,
            "variants_upgraded": self.variants_upgraded,
            "placeholders": self.placeholders,
        }

    def summary(self) -> str:
        prefix = f"[Chunk {self.chunk_id}] " if self.chunk_id is not None else ""
        return (
            f"{prefix}{self.slug}: {self.updated} updated, {self.failed} failed, "
            f"{self.unchanged} unchanged of {self.total}"
        )


async def reconcile_category(
    slug: str,
    store: DatasetStore,
    entities: bool = True,
    variants: bool = True,
    refetch: bool = True,
    placeholders: bool = True,
    fetch: Optional[AsyncFetcher] = None,
    batch_size: int = REFRESH_BATCH_SIZE,
    delay: float = REFRESH_BATCH_DELAY,
    retries: int = MAX_RETRIES,
    extractor: HtmlExtractor = DEFAULT_EXTRACTOR,
    now: Optional[datetime] = None,
    sleep: AsyncSleep = asyncio.sleep,
) -> ReconcileSummary:
    """Run the selected repair strategies over one category and save it.

    The category document is saved even if the run is interrupted, with
    every batch that finished applied.
    """
    products = store.load_category(slug)
    summary = ReconcileSummary(slug=slug, total=len(products))
    outcome = RefetchOutcome()
    logger.info(f"Reconciling {slug} ({len(products)} products)")

    try:
        if entities:
            summary.entities_fixed = repair_entities(products)
        if variants:
            summary.variants_upgraded = upgrade_variants(products)
        if refetch and products:
            try:
                await _refetch_with_session(
                    products,
                    outcome,
                    fetch,
                    batch_size=batch_size,
                    delay=delay,
                    retries=retries,
                    extractor=extractor,
                    sleep=sleep,
                    label=f"{slug} ",
                )
            finally:
                apply_image_updates(products, outcome.updates)
        if placeholders:
            summary.placeholders = assign_placeholders(products, skip_ids=outcome.updates, now=now)
    finally:
        store.save_category(slug, products)

    summary.absorb(outcome)
    logger.info(summary.summary())
    log_pipeline_event("reconcile_complete", summary.to_dict(), logger_name="reconcile")
    return summary


async def compute_chunk_updates(
    products: Sequence[Product],
    start: int,
    end: int,
    outcome: Optional[RefetchOutcome] = None,
    fetch: Optional[AsyncFetcher] = None,
    batch_size: int = CHUNK_BATCH_SIZE,
    delay: float = CHUNK_BATCH_DELAY,
    retries: int = MAX_RETRIES,
    extractor: HtmlExtractor = DEFAULT_EXTRACTOR,
    sleep: AsyncSleep = asyncio.sleep,
    label: str = "",
) -> RefetchOutcome:
    """Re-fetch products[start:end] and return id-keyed image updates."""
    outcome = outcome if outcome is not None else RefetchOutcome()
    return await _refetch_with_session(
        products[start:end],
        outcome,
        fetch,
        batch_size=batch_size,
        delay=delay,
        retries=retries,
        extractor=extractor,
        sleep=sleep,
        label=label,
    )


def commit_updates(
    store: DatasetStore,
    slug: str,
    updates: Dict[str, List[ProductImage]],
) -> int:
    """Re-read the category document, apply updates by id, and save it.

    Re-reading at commit time keeps other chunks' already-saved updates,
    as long as chunks cover disjoint products and their commits don't
    interleave. Overlapping chunks are last-writer-wins for the shared ids.
    """
    products = store.load_category(slug)
    applied = apply_image_updates(products, updates)
    store.save_category(slug, products)
    return applied


async def reconcile_chunk(
    slug: str,
    start: int,
    end: int,
    store: DatasetStore,
    chunk_id: str = "?",
    fetch: Optional[AsyncFetcher] = None,
    batch_size: int = CHUNK_BATCH_SIZE,
    delay: float = CHUNK_BATCH_DELAY,
    retries: int = MAX_RETRIES,
    extractor: HtmlExtractor = DEFAULT_EXTRACTOR,
    sleep: AsyncSleep = asyncio.sleep,
) -> ReconcileSummary:
    """Re-fetch images for one index range of a category.

    Meant for fan-out across separate processes, each given a disjoint
    ``[start, end)``. Nothing here guards against overlapping ranges.
    """
    products = store.load_category(slug)
    end = min(end, len(products))
    start = max(0, start)
    summary = ReconcileSummary(slug=slug, total=max(end - start, 0), chunk_id=chunk_id)
    logger.info(f"[Chunk {chunk_id}] Processing products {start}-{end} ({summary.total} items)")

    outcome = RefetchOutcome()
    try:
        if start < end:
            await compute_chunk_updates(
                products,
                start,
                end,
                outcome,
                fetch=fetch,
                batch_size=batch_size,
                delay=delay,
                retries=retries,
                extractor=extractor,
                sleep=sleep,
                label=f"[Chunk {chunk_id}] ",
            )
    finally:
        if outcome.updates:
            commit_updates(store, slug, outcome.updates)

    summary.absorb(outcome)
    logger.info(summary.summary())
    log_pipeline_event("reconcile_complete", summary.to_dict(), logger_name="reconcile")
    return summary
