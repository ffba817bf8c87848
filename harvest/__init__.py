"""Furniture catalog harvester and image reconciliation package."""

__version__ = "0.1.0"

# Re-export main components for convenient imports
from harvest.catalog import Catalog
from harvest.config import (
    BASE_URL,
    CATEGORIES,
    DATA_DIR,
    get_category,
    resolve_category_slug,
)
from harvest.crawler import CrawlReport, crawl_all, crawl_category
from harvest.extractor import HtmlExtractor, MarkupRules
from harvest.fetcher import FetchError, HttpStatusError, NetworkError, fetch_html
from harvest.models import Category, Product, ProductImage
from harvest.reconcile import ReconcileSummary, reconcile_category, reconcile_chunk
from harvest.store import DatasetStore

__all__ = [
    # Version
    "__version__",
    # Config
    "BASE_URL",
    "CATEGORIES",
    "DATA_DIR",
    "get_category",
    "resolve_category_slug",
    # Models
    "Category",
    "Product",
    "ProductImage",
    # Core functions
    "Catalog",
    "CrawlReport",
    "crawl_category",
    "crawl_all",
    "HtmlExtractor",
    "MarkupRules",
    "FetchError",
    "HttpStatusError",
    "NetworkError",
    "fetch_html",
    "ReconcileSummary",
    "reconcile_category",
    "reconcile_chunk",
    "DatasetStore",
]
