"""HTML parsing and extraction for source-site pages.

All knowledge of the source site's markup lives in ``MarkupRules``. When
the site changes its templates, a new rules instance (or an
``HtmlExtractor`` subclass) is the only thing that needs to change; the
crawler and the reconciler only see the records returned here.

Extraction never raises on malformed markup. Sections that can't be
located come back empty.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Pattern, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from harvest.config import (
    BASE_URL,
    DESCRIPTION_MIN_LENGTH,
    DESIGNER_MAX_LENGTH,
    DETAIL_IMAGE_SIZE,
    STORAGE_HOST_MARKER,
    STORAGE_PATH_MARKER,
)
from harvest.models import ProductImage
from harvest.normalizer import (
    decode_entities,
    format_price,
    parse_price,
    resolve_availability,
    resolve_url,
)

__all__ = [
    "MarkupRules",
    "ListingRecord",
    "ListingPage",
    "DetailRecord",
    "HtmlExtractor",
    "DEFAULT_EXTRACTOR",
    "extract_listing",
    "extract_detail",
    "extract_image_candidates",
]


@dataclass(frozen=True)
class MarkupRules:
    """Selectors, patterns and thresholds describing the source markup."""

    # Listing pages: <li><a><img></a><a href="/categories/1-LIGHTING/123-slug"><h2>..</h2><p>..</p></a></li>
    product_href_re: Pattern = re.compile(r"/categories/\d+-[A-Z-]+/(\d+)-(.+?)(?:\?|$)", re.IGNORECASE)
    title_selector: str = "a h2"
    info_tag: str = "p"
    item_tag: str = "li"
    thumbnail_selector: str = "a img"
    # "$650.00 L585 VA available: 9"
    sku_re: Pattern = re.compile(r"([A-Z]\d{2,4}\s*[A-Z]*\d*)")
    availability_re: Pattern = re.compile(r"available:\s*(\d+)", re.IGNORECASE)
    sold_marker: str = "sold"

    # Pagination
    pagination_selector: str = ".pagination"
    next_link_text: str = "Next"

    # Detail pages
    designer_separator: str = "/"
    excluded_markers: Tuple[str, ...] = ("@", "©")
    designer_max_length: int = DESIGNER_MAX_LENGTH
    description_min_length: int = DESCRIPTION_MIN_LENGTH
    size_label: str = "Size:"
    storage_path_marker: str = STORAGE_PATH_MARKER
    representation_marker: str = "representations"
    image_size_re: Pattern = re.compile(r"/\d+x\d+\b")
    detail_image_size: str = DETAIL_IMAGE_SIZE

    # Raw-markup image candidates
    storage_host_marker: str = STORAGE_HOST_MARKER


@dataclass
class ListingRecord:
    """One product as seen on a category listing page."""

    id: str
    slug: str
    name: str
    url: str
    price: float = 0
    price_formatted: str = ""
    sku: str = ""
    available: int = 1
    sold: bool = False
    thumbnail: str = ""
    category: str = ""


@dataclass
class ListingPage:
    products: List[ListingRecord] = field(default_factory=list)
    next_page_url: Optional[str] = None
    total_pages: int = 1


@dataclass
class DetailRecord:
    """Fields only available on a product's detail page."""

    designer: str = ""
    description: str = ""
    dimensions: str = ""
    images: List[ProductImage] = field(default_factory=list)


def _text(element) -> str:
    """Element text with whitespace collapsed."""
    return " ".join(element.get_text(" ", strip=True).split())


class HtmlExtractor:
    """Extracts listing and detail records using a set of MarkupRules."""

    def __init__(self, rules: Optional[MarkupRules] = None, base_url: str = BASE_URL):
        self.rules = rules or MarkupRules()
        self.base_url = base_url

    # ------------------------------------------------------------------
    # Listing pages
    # ------------------------------------------------------------------

    def extract_listing(
        self,
        html: str,
        category_label: str,
        page_url: Optional[str] = None,
    ) -> ListingPage:
        """Extract product records and pagination from a listing page.

        Args:
            html: Raw listing page HTML
            category_label: Category name stamped onto every record
            page_url: URL the page was fetched from, for relative next links

        Returns:
            ListingPage with records in page order (first occurrence of each id)
        """
        soup = BeautifulSoup(html or "", "html.parser")
        rules = self.rules
        products: List[ListingRecord] = []
        seen_ids = set()

        for heading in soup.select(rules.title_selector):
            link = heading.find_parent("a")
            if link is None:
                continue
            href = link.get("href")
            if not href or not isinstance(href, str):
                continue
            match = rules.product_href_re.search(href)
            if not match:
                continue

            product_id, slug = match.group(1), match.group(2)
            name = _text(heading)
            if not name or product_id in seen_ids:
                continue
            seen_ids.add(product_id)

            info_text = " ".join(_text(p) for p in link.find_all(rules.info_tag))
            price, price_token = parse_price(info_text)
            sold = rules.sold_marker in info_text.lower()
            sku_match = rules.sku_re.search(info_text)
            avail_match = rules.availability_re.search(info_text)

            products.append(ListingRecord(
                id=product_id,
                slug=slug,
                name=name,
                url=href,
                price=price,
                price_formatted=format_price(price_token, sold),
                sku=sku_match.group(1).strip() if sku_match else "",
                available=resolve_availability(
                    int(avail_match.group(1)) if avail_match else None, sold
                ),
                sold=sold,
                thumbnail=self._thumbnail_for(link),
                category=category_label,
            ))

        return ListingPage(
            products=products,
            next_page_url=self.extract_next_page_url(soup, page_url or self.base_url),
            total_pages=self.extract_total_pages(soup),
        )

    def _thumbnail_for(self, link) -> str:
        """src of the first image link in the same list item as ``link``."""
        container = link.find_parent(self.rules.item_tag) or link.parent
        if container is None:
            return ""
        img = container.select_one(self.rules.thumbnail_selector)
        if img is None:
            return ""
        src = img.get("src")
        return src if isinstance(src, str) else ""

    def extract_total_pages(self, soup: BeautifulSoup) -> int:
        """Largest number in the pagination control, or 1 if there is none."""
        text = " ".join(_text(el) for el in soup.select(self.rules.pagination_selector))
        numbers = [int(n) for n in re.findall(r"\d+", text)]
        if not numbers:
            return 1
        return max(max(numbers), 1)

    def extract_next_page_url(self, soup: BeautifulSoup, page_url: str) -> Optional[str]:
        """href of the last link whose text mentions "Next", made absolute."""
        next_href: Optional[str] = None
        for a in soup.find_all("a"):
            if self.rules.next_link_text not in a.get_text():
                continue
            href = a.get("href")
            if href and isinstance(href, str):
                next_href = href
        if next_href is None:
            return None
        return urljoin(page_url, decode_entities(next_href))

    # ------------------------------------------------------------------
    # Detail pages
    # ------------------------------------------------------------------

    def extract_detail(self, html: str, product_name: str) -> DetailRecord:
        """Extract designer, description, dimensions and images.

        Paragraph classification is heuristic and the last matching
        paragraph wins for each role.
        """
        soup = BeautifulSoup(html or "", "html.parser")
        rules = self.rules
        detail = DetailRecord()

        for p in soup.find_all("p"):
            text = _text(p)
            if any(marker in text for marker in rules.excluded_markers):
                continue
            has_separator = rules.designer_separator in text
            if has_separator and len(text) < rules.designer_max_length:
                detail.designer = text
            if not has_separator and len(text) > rules.description_min_length:
                detail.description = text

        for row in soup.find_all("tr"):
            if rules.size_label not in row.get_text():
                continue
            cells = row.find_all("td")
            if len(cells) >= 2:
                detail.dimensions = _text(cells[1])

        seen_src = set()
        for img in soup.find_all("img"):
            src = img.get("src")
            if not src or not isinstance(src, str):
                continue
            if rules.storage_path_marker not in src or src in seen_src:
                continue
            seen_src.add(src)
            detail.images.append(ProductImage(
                url=resolve_url(self.upgrade_size(src), self.base_url),
                alt=product_name,
            ))

        return detail

    def upgrade_size(self, src: str) -> str:
        """Swap the first WxH path segment of a representation URL for the large size."""
        if self.rules.representation_marker not in src:
            return src
        return self.rules.image_size_re.sub(f"/{self.rules.detail_image_size}", src, count=1)

    # ------------------------------------------------------------------
    # Raw-markup image scan (used when re-fetching for fresh URLs)
    # ------------------------------------------------------------------

    def extract_image_candidates(
        self,
        html: str,
        filter_token: Optional[str] = None,
        alt: str = "",
    ) -> List[ProductImage]:
        """Find storage-hosted image URLs anywhere in the raw markup.

        Looks at srcset (highest resolution entry), src, inline
        background-image styles and JSON "image" fields, in that order.
        """
        token = re.escape(filter_token or self.rules.storage_host_marker)
        html = html or ""
        urls: List[str] = []

        srcset_re = re.compile(r'(?:data-)?srcset="([^"]*' + token + r'[^"]*)"', re.IGNORECASE)
        for match in srcset_re.finditer(html):
            entries = [e.strip().split(" ")[0] for e in decode_entities(match.group(1)).split(",")]
            entries = [e for e in entries if e]
            if entries:
                urls.append(entries[-1])

        single_patterns = (
            r'src="(https://' + token + r'[^"]*)"',
            r"background-image:\s*url\(['\"]?(https://" + token + r"[^'\")\s]*)",
            r'"image":\s*"(https:(?:\\/|/)(?:\\/|/)' + token + r'[^"]*)"',
        )
        for pattern in single_patterns:
            for match in re.finditer(pattern, html, re.IGNORECASE):
                urls.append(decode_entities(match.group(1).replace("\\/", "/")))

        images: List[ProductImage] = []
        seen = set()
        for url in urls:
            if url in seen:
                continue
            seen.add(url)
            images.append(ProductImage(url=url, alt=alt))
        return images


DEFAULT_EXTRACTOR = HtmlExtractor()


def extract_listing(html: str, category_label: str, page_url: Optional[str] = None) -> ListingPage:
    return DEFAULT_EXTRACTOR.extract_listing(html, category_label, page_url)


def extract_detail(html: str, product_name: str) -> DetailRecord:
    return DEFAULT_EXTRACTOR.extract_detail(html, product_name)


def extract_image_candidates(html: str, filter_token: Optional[str] = None, alt: str = "") -> List[ProductImage]:
    return DEFAULT_EXTRACTOR.extract_image_candidates(html, filter_token, alt)
