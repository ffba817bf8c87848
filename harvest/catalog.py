"""Read-only queries over the saved dataset for the storefront.

Everything is computed from the JSON documents written by the crawler;
nothing here writes back.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from harvest.config import CATEGORIES, get_category, resolve_category_slug
from harvest.models import Category, Product
from harvest.store import DatasetStore

__all__ = ["Catalog", "CategoryPage", "SORT_KEYS"]

JUST_LANDED_SLUG = "752-JUST-LANDED"
_LEADING_ID_RE = re.compile(r"^(\d+)")


def _sort_newest(products: List[Product]) -> List[Product]:
    return list(products)


def _sort_oldest(products: List[Product]) -> List[Product]:
    return list(reversed(products))


SORT_KEYS: Dict[str, Callable[[List[Product]], List[Product]]] = {
    "newest": _sort_newest,
    "oldest": _sort_oldest,
    "price-low": lambda ps: sorted(ps, key=lambda p: p.price),
    "price-high": lambda ps: sorted(ps, key=lambda p: p.price, reverse=True),
    "name-az": lambda ps: sorted(ps, key=lambda p: p.name.lower()),
    "name-za": lambda ps: sorted(ps, key=lambda p: p.name.lower(), reverse=True),
}


@dataclass
class CategoryPage:
    """One page of a category listing plus whole-category stats."""

    products: List[Product] = field(default_factory=list)
    total: int = 0
    page: int = 1
    total_pages: int = 0
    stats: Dict[str, Any] = field(default_factory=dict)


def category_stats(products: List[Product]) -> Dict[str, Any]:
    """Price range over priced products and in-stock/sold counts."""
    prices = [p.price for p in products if p.price > 0]
    sold = sum(1 for p in products if p.is_sold)
    return {
        "minPrice": min(prices) if prices else 0,
        "maxPrice": max(prices) if prices else 0,
        "inStock": len(products) - sold,
        "sold": sold,
    }


class Catalog:
    """Storefront queries backed by a DatasetStore."""

    def __init__(self, store: Optional[DatasetStore] = None):
        self.store = store or DatasetStore()

    def all_products(self) -> List[Product]:
        """The aggregate document, or the category documents if it is missing."""
        products = self.store.load_aggregate()
        if products:
            return products
        combined: List[Product] = []
        for category in CATEGORIES:
            combined.extend(self.store.load_category(category.slug))
        return combined

    def get_categories(self) -> List[Category]:
        return list(CATEGORIES)

    def get_products_by_category(
        self,
        slug: str,
        page: int = 1,
        per_page: int = 24,
        sort: str = "newest",
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        availability: Optional[str] = None,
    ) -> CategoryPage:
        """Filtered, sorted and paginated products of one category.

        Stats describe the whole category, before any filter is applied.

        Args:
            slug: Category slug
            page: 1-based page number
            per_page: Products per page
            sort: One of SORT_KEYS; unknown values keep file order
            min_price: Lower price bound (inclusive)
            max_price: Upper price bound (inclusive)
            availability: 'in-stock' or 'sold'
        """
        category = get_category(slug)
        products = self.store.load_category(category.slug if category else slug)
        stats = category_stats(products)

        filtered = products
        if min_price is not None:
            filtered = [p for p in filtered if p.price >= min_price]
        if max_price is not None:
            filtered = [p for p in filtered if p.price <= max_price]
        if availability == "in-stock":
            filtered = [p for p in filtered if not p.is_sold]
        elif availability == "sold":
            filtered = [p for p in filtered if p.is_sold]

        ordered = SORT_KEYS.get(sort, _sort_newest)(filtered)
        page = max(page, 1)
        start = (page - 1) * per_page
        return CategoryPage(
            products=ordered[start:start + per_page],
            total=len(ordered),
            page=page,
            total_pages=math.ceil(len(ordered) / per_page) if per_page > 0 else 0,
            stats=stats,
        )

    def get_product(self, id_or_slug: str) -> Optional[Product]:
        """Find a product by id, slug, or '<id>-<slug>'."""
        products = self.all_products()
        match = _LEADING_ID_RE.match(id_or_slug)
        if match:
            for product in products:
                if product.id == match.group(1):
                    return product
        for product in products:
            if product.slug == id_or_slug or f"{product.id}-{product.slug}" == id_or_slug:
                return product
        return None

    def get_featured_products(self, limit: int = 8) -> List[Product]:
        featured = self.store.load_category(JUST_LANDED_SLUG)
        if not featured:
            featured = self.all_products()
        return featured[:limit]

    def search_products(self, query: str, limit: int = 24) -> List[Product]:
        """Products containing every query term (case-insensitive)."""
        terms = query.lower().split()
        if not terms:
            return []
        results: List[Product] = []
        for product in self.all_products():
            haystack = " ".join(
                (product.name, product.designer, product.description, product.sku)
            ).lower()
            if all(term in haystack for term in terms):
                results.append(product)
                if len(results) >= limit:
                    break
        return results

    def get_related_products(self, product: Product, limit: int = 4) -> List[Product]:
        slug = resolve_category_slug(product.category)
        related = [p for p in self.store.load_category(slug) if p.id != product.id]
        return related[:limit]
