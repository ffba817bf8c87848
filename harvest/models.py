"""Data models for catalog products."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

__all__ = [
    "Category",
    "ProductImage",
    "Product",
    "ItemResult",
    "fold_results",
    "PRODUCT_FIELDS",
]

# Persisted JSON key -> dataclass attribute, in document order
PRODUCT_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("id", "id"),
    ("slug", "slug"),
    ("name", "name"),
    ("price", "price"),
    ("priceFormatted", "price_formatted"),
    ("sku", "sku"),
    ("available", "available"),
    ("description", "description"),
    ("designer", "designer"),
    ("dimensions", "dimensions"),
    ("category", "category"),
    ("subcategory", "subcategory"),
    ("images", "images"),
    ("url", "url"),
)


@dataclass(frozen=True)
class Category:
    """A storefront category on the source site. Static configuration."""

    id: str
    name: str
    slug: str
    url: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name, "slug": self.slug, "url": self.url}


@dataclass
class ProductImage:
    url: str
    alt: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"url": self.url, "alt": self.alt}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductImage":
        return cls(url=str(data.get("url") or ""), alt=str(data.get("alt") or ""))


@dataclass
class Product:
    """Canonical product record as stored in the dataset documents.

    ``id`` is the source site's numeric product identifier and is the
    merge key across crawls and repair passes. Keys found in a stored
    record that this class does not model are kept in ``extra`` and
    written back unchanged.
    """

    id: str
    slug: str = ""
    name: str = ""
    price: float = 0
    price_formatted: str = ""
    sku: str = ""
    available: int = 1
    description: str = ""
    designer: str = ""
    dimensions: str = ""
    category: str = ""
    subcategory: str = ""
    images: List[ProductImage] = field(default_factory=list)
    url: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_sold(self) -> bool:
        return self.available == 0 or self.price_formatted == "sold"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for key, attr in PRODUCT_FIELDS:
            value = getattr(self, attr)
            if attr == "images":
                value = [img.to_dict() for img in value]
            elif attr == "price":
                value = _json_number(value)
            data[key] = value
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Product":
        known = {key for key, _ in PRODUCT_FIELDS}
        try:
            price = float(data.get("price") or 0)
        except (TypeError, ValueError):
            price = 0
        try:
            available = int(data.get("available", 1))
        except (TypeError, ValueError):
            available = 1
        return cls(
            id=str(data.get("id", "")),
            slug=str(data.get("slug") or ""),
            name=str(data.get("name") or ""),
            price=price,
            price_formatted=str(data.get("priceFormatted") or ""),
            sku=str(data.get("sku") or ""),
            available=available,
            description=str(data.get("description") or ""),
            designer=str(data.get("designer") or ""),
            dimensions=str(data.get("dimensions") or ""),
            category=str(data.get("category") or ""),
            subcategory=str(data.get("subcategory") or ""),
            images=[
                ProductImage.from_dict(img)
                for img in data.get("images") or []
                if isinstance(img, dict)
            ],
            url=str(data.get("url") or ""),
            extra={k: v for k, v in data.items() if k not in known},
        )


def _json_number(value: float) -> Any:
    """Whole prices are stored as integers (650, not 650.0)."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


@dataclass
class ItemResult:
    """Outcome of one unit of work (one detail page, one re-fetch).

    ``error`` set means the item failed; ``value`` None with no error
    means the work ran but produced nothing to apply.
    """

    product_id: str
    value: Optional[Any] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def fold_results(results: Iterable[ItemResult]) -> Tuple[List[ItemResult], List[Tuple[str, str]]]:
    """Split results into (succeeded, [(product_id, reason), ...])."""
    succeeded: List[ItemResult] = []
    failed: List[Tuple[str, str]] = []
    for result in results:
        if result.ok:
            succeeded.append(result)
        else:
            failed.append((result.product_id, result.error or "unknown"))
    return succeeded, failed
