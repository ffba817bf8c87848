"""Turn raw extracted fields into canonical Product records."""

import re
from typing import TYPE_CHECKING, Iterable, List, Optional, Tuple
from urllib.parse import urljoin

from harvest.config import BASE_URL
from harvest.models import Product, ProductImage
from harvest.url_validation import is_absolute_http_url, sanitize_url

if TYPE_CHECKING:
    from harvest.extractor import DetailRecord, ListingRecord

__all__ = [
    "decode_entities",
    "resolve_url",
    "normalize_image_url",
    "dedupe_images",
    "normalize_images",
    "parse_price",
    "format_price",
    "resolve_availability",
    "normalize",
    "apply_detail",
    "normalize_product",
]

# Order matters only within one pass; decode_entities repeats until stable
ENTITIES: Tuple[Tuple[str, str], ...] = (
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&#x27;", "'"),
    ("&#x2F;", "/"),
    ("&#x2f;", "/"),
)

SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:")
PRICE_TOKEN_RE = re.compile(r"\$[\d,]+\.?\d*")


def decode_entities(text: str) -> str:
    """Decode the common HTML entities until none are left.

    Repeating until the string stops changing makes this idempotent
    even for double-encoded input such as ``&amp;amp;``. Every
    replacement shortens the string, so the loop terminates.
    """
    while True:
        decoded = text
        for entity, char in ENTITIES:
            decoded = decoded.replace(entity, char)
        if decoded == text:
            return decoded
        text = decoded


def resolve_url(url: str, base: str = BASE_URL) -> str:
    """Make a scheme-less URL absolute against the source site origin."""
    url = sanitize_url(url)
    if not url:
        return ""
    if url.startswith("//"):
        return "https:" + url
    if SCHEME_RE.match(url):
        return url
    return urljoin(base.rstrip("/") + "/", url)


def normalize_image_url(url: str) -> Optional[str]:
    """Decoded absolute http(s) URL, or None if the URL can't be made one."""
    resolved = resolve_url(decode_entities(url or ""))
    return resolved if is_absolute_http_url(resolved) else None


def dedupe_images(images: Iterable[ProductImage]) -> List[ProductImage]:
    """Drop exact-URL duplicates, keeping first-seen order."""
    seen = set()
    unique: List[ProductImage] = []
    for img in images:
        if img.url in seen:
            continue
        seen.add(img.url)
        unique.append(img)
    return unique


def normalize_images(images: Iterable[ProductImage], default_alt: str = "") -> List[ProductImage]:
    """Decode, absolutize and de-duplicate an image list."""
    normalized: List[ProductImage] = []
    for img in images:
        url = normalize_image_url(img.url)
        if url is None:
            continue
        normalized.append(ProductImage(url=url, alt=img.alt or default_alt))
    return dedupe_images(normalized)


def parse_price(text: str) -> Tuple[float, Optional[str]]:
    """Find a "$1,234.00" style token. Returns (amount, token or None)."""
    match = PRICE_TOKEN_RE.search(text or "")
    if not match:
        return 0, None
    token = match.group(0)
    try:
        amount = float(token.replace("$", "").replace(",", ""))
    except ValueError:
        amount = 0
    return amount, token


def format_price(token: Optional[str], sold: bool) -> str:
    if token:
        return token
    return "sold" if sold else ""


def resolve_availability(count: Optional[int], sold: bool) -> int:
    """Explicit count wins; otherwise sold means 0 and anything else 1."""
    if count is not None:
        return max(count, 0)
    return 0 if sold else 1


def normalize(record: "ListingRecord", detail: Optional["DetailRecord"] = None) -> Product:
    """Build a Product from a listing record and, if fetched, its detail page."""
    images: List[ProductImage] = []
    if record.thumbnail:
        images = [ProductImage(url=record.thumbnail, alt=record.name)]

    product = Product(
        id=record.id,
        slug=record.slug,
        name=record.name,
        price=max(record.price, 0),
        price_formatted=record.price_formatted,
        sku=record.sku,
        available=record.available,
        category=record.category,
        images=normalize_images(images, default_alt=record.name),
        url=resolve_url(decode_entities(record.url)),
    )
    if detail is not None:
        apply_detail(product, detail)
    return product


def apply_detail(product: Product, detail: "DetailRecord") -> Product:
    """Merge detail-page fields into a listing-only product in place.

    Fields the detail page didn't yield keep their listing values, and the
    listing thumbnail is only replaced when the detail page had images.
    """
    if detail.designer:
        product.designer = detail.designer
    if detail.description:
        product.description = detail.description
    if detail.dimensions:
        product.dimensions = detail.dimensions
    images = normalize_images(detail.images, default_alt=product.name)
    if images:
        product.images = images
    return product


def normalize_product(product: Product) -> Product:
    """Re-apply URL normalization to a stored record in place."""
    product.images = normalize_images(product.images, default_alt=product.name)
    if product.url:
        product.url = resolve_url(decode_entities(product.url))
    return product
