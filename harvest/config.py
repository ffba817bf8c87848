"""Configuration and constants for the harvest pipeline."""

import os
import re
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from harvest.models import Category

__all__ = [
    "BASE_URL",
    "HEADERS",
    "REQUEST_TIMEOUT",
    "REFETCH_TIMEOUT",
    "MIRROR_TIMEOUT",
    "MAX_REDIRECTS",
    "LISTING_DELAY",
    "DETAIL_DELAY",
    "MIRROR_DELAY",
    "REFRESH_BATCH_SIZE",
    "REFRESH_BATCH_DELAY",
    "CHUNK_BATCH_SIZE",
    "CHUNK_BATCH_DELAY",
    "MAX_RETRIES",
    "RETRY_BACKOFF_BASE",
    "MAX_RETRY_BACKOFF",
    "RETRY_STATUS_CODES",
    "LISTING_SORT_ORDER",
    "DESIGNER_MAX_LENGTH",
    "DESCRIPTION_MIN_LENGTH",
    "STORAGE_PATH_MARKER",
    "STORAGE_HOST_MARKER",
    "DETAIL_IMAGE_SIZE",
    "SMALL_VARIANT",
    "LARGE_VARIANT",
    "SIGNED_URL_MARKERS",
    "SIGNATURE_QUERY_PARAMS",
    "PLACEHOLDER_HOST",
    "PLACEHOLDER_TEMPLATE",
    "CATEGORY_SEEDS",
    "DEFAULT_CATEGORY_SEED",
    "PROJECT_ROOT",
    "DATA_DIR",
    "AGGREGATE_FILENAME",
    "CATEGORIES_FILE",
    "IMAGES_DIR",
    "MIRROR_BASE_URL",
    "LOG_DIR",
    "CATEGORIES",
    "get_category",
    "resolve_category_slug",
    "category_key",
]

load_dotenv()

PROJECT_ROOT = Path(__file__).resolve().parent.parent

BASE_URL = "https://amsterdammodern.com"

# Browser-like headers; the source site blocks obvious bots
HEADERS: Dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

# Request timeouts (seconds)
REQUEST_TIMEOUT = float(os.getenv("HARVEST_REQUEST_TIMEOUT", "30"))
REFETCH_TIMEOUT = float(os.getenv("HARVEST_REFETCH_TIMEOUT", "15"))
MIRROR_TIMEOUT = 30.0

# Each fetch follows one redirect and delegates the rest; this bounds the chain
MAX_REDIRECTS = 5

# Rate limiting (seconds)
LISTING_DELAY = float(os.getenv("HARVEST_LISTING_DELAY", "0.5"))
DETAIL_DELAY = float(os.getenv("HARVEST_DETAIL_DELAY", "0.2"))
MIRROR_DELAY = 0.05

# Batched re-fetch: batch size caps concurrent connections to the source site
REFRESH_BATCH_SIZE = int(os.getenv("HARVEST_REFRESH_BATCH_SIZE", "5"))
REFRESH_BATCH_DELAY = 1.0
CHUNK_BATCH_SIZE = int(os.getenv("HARVEST_CHUNK_BATCH_SIZE", "20"))
CHUNK_BATCH_DELAY = 0.2

# Retry settings with exponential backoff (applied by callers, not the fetcher)
MAX_RETRIES = int(os.getenv("HARVEST_MAX_RETRIES", "2"))
RETRY_BACKOFF_BASE = 2.0
MAX_RETRY_BACKOFF = 30.0
RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Listing pages are requested in a fixed order so page boundaries are stable
LISTING_SORT_ORDER = "added_new-old"

# Detail page paragraph heuristics
DESIGNER_MAX_LENGTH = 150
DESCRIPTION_MIN_LENGTH = 100

# Image storage
STORAGE_PATH_MARKER = "active_storage"
STORAGE_HOST_MARKER = "ammod-pro.s3"
DETAIL_IMAGE_SIZE = "800x600"

# Variant hashes in representations/.../<variant>/... paths
SMALL_VARIANT = "2aee56bd1613eab785806717af7b0b01434013a7f089cb7f741b194d6a0c3933"
LARGE_VARIANT = "2b828b68e38c7c650e25e76cd0bcabdc362e4178326ec3d97375a4b7734cb483"

# Signed storage URLs expire after a fixed window
SIGNED_URL_MARKERS: Tuple[str, ...] = ("X-Amz-Signature", "X-Amz-Credential")
SIGNATURE_QUERY_PARAMS = frozenset({"signature", "x-amz-signature", "sig"})

# Deterministic placeholders
PLACEHOLDER_HOST = "picsum.photos"
PLACEHOLDER_TEMPLATE = "https://picsum.photos/seed/{seed}/800/800"
CATEGORY_SEEDS: Dict[str, int] = {
    "LIGHTING": 100,
    "SEATING": 200,
    "STORAGE": 300,
    "TABLES": 400,
    "OTHER": 500,
    "JUST-LANDED": 600,
    "BY-STYLE": 700,
    "ARCHIVE": 800,
}
DEFAULT_CATEGORY_SEED = 500

# Output paths
DATA_DIR = Path(os.getenv("HARVEST_DATA_DIR", str(PROJECT_ROOT / "data" / "products")))
AGGREGATE_FILENAME = "all-products.json"
CATEGORIES_FILE = DATA_DIR.parent / "categories.json"
IMAGES_DIR = Path(os.getenv("HARVEST_IMAGES_DIR", str(PROJECT_ROOT / "public" / "images" / "products")))
MIRROR_BASE_URL = os.getenv("HARVEST_MIRROR_BASE_URL", "http://localhost:3000/images/products").rstrip("/")
LOG_DIR = Path(os.getenv("HARVEST_LOG_DIR", str(PROJECT_ROOT / "logs")))


def _category(id_: str, name: str) -> Category:
    slug = f"{id_}-{name.replace(' ', '-')}"
    return Category(id=id_, name=name, slug=slug, url=f"{BASE_URL}/categories/{slug}")


# Enumeration order is also the aggregate document order
CATEGORIES: Tuple[Category, ...] = (
    _category("1", "LIGHTING"),
    _category("2", "SEATING"),
    _category("3", "TABLES"),
    _category("4", "STORAGE"),
    _category("6", "OTHER"),
    _category("752", "JUST LANDED"),
    _category("1112", "BY STYLE"),
    _category("15", "ARCHIVE"),
)

_SLUG_PREFIX_RE = re.compile(r"^\d+-")


def get_category(slug: str) -> Optional[Category]:
    """Look up a category by its slug (case-insensitive)."""
    wanted = slug.upper()
    for category in CATEGORIES:
        if category.slug.upper() == wanted:
            return category
    return None


def category_key(label: str) -> str:
    """Bare upper-case key for a category label.

    "1-LIGHTING", "Lighting" and "LIGHTING" all map to "LIGHTING";
    "JUST LANDED" maps to "JUST-LANDED".
    """
    bare = _SLUG_PREFIX_RE.sub("", label.strip())
    return re.sub(r"\s+", "-", bare).upper()


def resolve_category_slug(label: str) -> str:
    """Map a product's category label to its dataset slug.

    Bare names and slug-prefixed forms ("LIGHTING", "1-lighting",
    "752-JUST LANDED") resolve through the category table. Labels that
    match no configured category are returned unchanged.
    """
    key = category_key(label)
    for category in CATEGORIES:
        if category_key(category.name) == key:
            return category.slug
    return label
