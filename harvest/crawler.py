"""Category crawling: listing pages, detail enrichment, saving.

A category moves through:

    start -> listing page 1..n (until no "Next" link) -> detail 1..m -> saving -> done

Only a failure on the first listing page aborts a category. A later
listing page failure ends pagination early, and a detail page failure
keeps the listing-only record; both are logged and counted.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set, Tuple

import requests  # type: ignore[import-untyped]

from harvest.config import (
    CATEGORIES,
    DETAIL_DELAY,
    LISTING_DELAY,
    LISTING_SORT_ORDER,
    MAX_RETRIES,
    get_category,
)
from harvest.extractor import DEFAULT_EXTRACTOR, HtmlExtractor, ListingPage, ListingRecord
from harvest.fetcher import FetchError, backoff_delay, create_session, fetch_html, is_retryable
from harvest.logging_config import get_logger, log_pipeline_event
from harvest.merge import dedupe_by_id, merge_products
from harvest.models import Category, ItemResult, Product, fold_results
from harvest.normalizer import apply_detail, normalize
from harvest.store import DatasetStore

__all__ = [
    "CrawlAborted",
    "CrawlReport",
    "Fetcher",
    "listing_start_url",
    "fetch_with_retry",
    "crawl_listing_pages",
    "enrich_products",
    "crawl_category",
    "crawl_all",
]

logger = get_logger("crawler")

# fetch(url, session=...) -> html
Fetcher = Callable[..., str]


class CrawlAborted(Exception):
    """The first listing page of a category could not be fetched."""

    def __init__(self, slug: str, reason: str):
        super().__init__(f"{slug}: {reason}")
        self.slug = slug
        self.reason = reason


@dataclass
class CrawlReport:
    """Outcome of crawling one category."""

    slug: str
    status: str = "pending"
    pages: int = 0
    total_pages: int = 1
    listed: int = 0
    saved: int = 0
    enriched: int = 0
    page_failures: List[Tuple[str, str]] = field(default_factory=list)
    detail_failures: List[Tuple[str, str]] = field(default_factory=list)
    products: List[Product] = field(default_factory=list, repr=False)

    def summary(self) -> str:
        return (
            f"{self.slug}: {self.status}, {self.listed} listed, {self.enriched} enriched, "
            f"{len(self.detail_failures)} detail failures, {self.saved} saved"
        )


def listing_start_url(category: Category) -> str:
    return f"{category.url}?order={LISTING_SORT_ORDER}&page=1"


def fetch_with_retry(
    url: str,
    fetch: Fetcher = fetch_html,
    session: Optional[requests.Session] = None,
    retries: int = MAX_RETRIES,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Fetch with backoff on transient failures; re-raises the last FetchError."""
    attempt = 0
    while True:
        try:
            return fetch(url, session=session)
        except FetchError as e:
            if attempt >= retries or not is_retryable(e):
                raise
            delay = backoff_delay(attempt)
            logger.warning(f"{e}; retrying in {delay:.1f}s (attempt {attempt + 1}/{retries})")
            sleep(delay)
            attempt += 1


def crawl_listing_pages(
    category: Category,
    report: CrawlReport,
    fetch: Fetcher = fetch_html,
    session: Optional[requests.Session] = None,
    extractor: HtmlExtractor = DEFAULT_EXTRACTOR,
    delay: float = LISTING_DELAY,
    retries: int = MAX_RETRIES,
    sleep: Callable[[float], None] = time.sleep,
) -> List[ListingRecord]:
    """Follow "Next" links from page 1 and collect listing records.

    Pages are fetched strictly one after another, since each page's next
    link is only known once it has been parsed. The reported total page
    count is for progress output only.

    Raises:
        CrawlAborted: If the first page can't be fetched
    """
    records: List[ListingRecord] = []
    seen_ids = set()
    visited = set()
    current_url: Optional[str] = listing_start_url(category)

    while current_url and current_url not in visited:
        visited.add(current_url)
        page_num = report.pages + 1
        logger.info(f"  Page {page_num}/{report.total_pages}: {current_url}")

        try:
            html = fetch_with_retry(current_url, fetch, session, retries, sleep)
        except FetchError as e:
            if page_num == 1:
                raise CrawlAborted(category.slug, str(e)) from e
            logger.error(f"  Listing page {page_num} failed, stopping pagination: {e}")
            report.page_failures.append((current_url, str(e)))
            break

        page: ListingPage = extractor.extract_listing(html, category.name, page_url=current_url)
        report.pages = page_num
        report.total_pages = max(page.total_pages, page_num)

        new_records = [r for r in page.products if r.id not in seen_ids]
        seen_ids.update(r.id for r in new_records)
        records.extend(new_records)
        logger.info(f"    Found {len(page.products)} products ({len(new_records)} new)")
        log_pipeline_event("listing_page", {
            "category": category.slug,
            "page": page_num,
            "url": current_url,
            "products": len(page.products),
            "new_products": len(new_records),
        }, logger_name="crawler")

        current_url = page.next_page_url
        if current_url:
            sleep(delay)

    return records


def _enrich_one(
    product: Product,
    fetch: Fetcher,
    session: Optional[requests.Session],
    extractor: HtmlExtractor,
) -> ItemResult:
    try:
        html = fetch(product.url, session=session)
    except FetchError as e:
        return ItemResult(product.id, error=str(e))
    detail = extractor.extract_detail(html, product.name)
    apply_detail(product, detail)
    return ItemResult(product.id, value=bool(detail.images))


def enrich_products(
    products: List[Product],
    report: CrawlReport,
    fetch: Fetcher = fetch_html,
    session: Optional[requests.Session] = None,
    extractor: HtmlExtractor = DEFAULT_EXTRACTOR,
    delay: float = DETAIL_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> Set[str]:
    """Fetch each product's detail page and merge in its fields in place.

    Products whose detail page fails are kept with their listing fields.

    Returns:
        Ids of products whose images now come from their detail page
    """
    results: List[ItemResult] = []
    total = len(products)
    for i, product in enumerate(products, start=1):
        logger.info(f"      [{i}/{total}] {product.name[:40]}")
        result = _enrich_one(product, fetch, session, extractor)
        if not result.ok:
            logger.warning(f"        Detail failed for {product.id}: {result.error}")
            log_pipeline_event("detail_error", {
                "category": report.slug,
                "product_id": product.id,
                "url": product.url,
                "error": result.error,
            }, logger_name="crawler")
        results.append(result)
        if i < total:
            sleep(delay)

    succeeded, failed = fold_results(results)
    report.enriched = len(succeeded)
    report.detail_failures.extend(failed)
    return {r.product_id for r in succeeded if r.value}


def crawl_category(
    slug: str,
    store: DatasetStore,
    quick: bool = False,
    fetch: Fetcher = fetch_html,
    session: Optional[requests.Session] = None,
    extractor: HtmlExtractor = DEFAULT_EXTRACTOR,
    listing_delay: float = LISTING_DELAY,
    detail_delay: float = DETAIL_DELAY,
    retries: int = MAX_RETRIES,
    sleep: Callable[[float], None] = time.sleep,
) -> CrawlReport:
    """Crawl one category and save it.

    Args:
        slug: Category slug, e.g. '1-LIGHTING'
        store: Dataset store to merge into and save to
        quick: Skip detail pages and save listing-only records
        fetch: Page fetcher (``fetch_html`` signature)
        session: Optional requests.Session shared across fetches
        extractor: Markup extraction strategy
        listing_delay: Seconds between listing page fetches
        detail_delay: Seconds between detail page fetches
        retries: Retry attempts for transient listing page failures
        sleep: Delay function

    Returns:
        CrawlReport; status is 'done' or 'aborted'

    Raises:
        KeyError: Unknown category slug
    """
    category = get_category(slug)
    if category is None:
        raise KeyError(f"Unknown category: {slug}")

    report = CrawlReport(slug=category.slug)
    sess = session or create_session()
    logger.info(f"Scraping category {category.name}" + (" (quick mode)" if quick else ""))
    log_pipeline_event("category_start", {
        "category": category.slug,
        "quick": quick,
    }, logger_name="crawler")

    try:
        records = crawl_listing_pages(
            category, report, fetch, sess, extractor, listing_delay, retries, sleep
        )
    except CrawlAborted as e:
        report.status = "aborted"
        logger.error(f"  Aborting {category.slug}: {e.reason}")
        log_pipeline_event("category_aborted", {
            "category": category.slug,
            "error": e.reason,
        }, logger_name="crawler")
        return report

    products = dedupe_by_id(normalize(r) for r in records)
    report.listed = len(products)
    logger.info(f"  Total: {len(products)} products in {category.name}")

    fresh_image_ids: Set[str] = set()
    if not quick:
        fresh_image_ids = enrich_products(
            products, report, fetch, sess, extractor, detail_delay, sleep
        )
        logger.info("  Details fetched.")

    merged = merge_products(store.load_category(category.slug), products, fresh_image_ids)
    path = store.save_category(category.slug, merged)
    report.saved = len(merged)
    report.products = merged
    report.status = "done"

    logger.info(f"  Saved to {path}")
    log_pipeline_event("category_complete", {
        "category": category.slug,
        "pages": report.pages,
        "listed": report.listed,
        "enriched": report.enriched,
        "detail_failures": len(report.detail_failures),
        "page_failures": len(report.page_failures),
        "saved": report.saved,
    }, logger_name="crawler")
    return report


def crawl_all(
    store: DatasetStore,
    quick: bool = False,
    categories: Tuple[Category, ...] = CATEGORIES,
    **kwargs,
) -> List[CrawlReport]:
    """Crawl every configured category, then rebuild the aggregate document.

    An aborted category leaves its previous document untouched; the
    aggregate is rebuilt from whatever is on disk.
    """
    session = kwargs.pop("session", None) or create_session()
    reports = [
        crawl_category(category.slug, store, quick=quick, session=session, **kwargs)
        for category in categories
    ]
    total = store.rebuild_aggregate([c.slug for c in categories])
    logger.info(f"Total: {total} products saved to aggregate")
    return reports
