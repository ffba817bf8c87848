"""JSON dataset storage: one document per category plus an aggregate.

The store only reads and writes whole documents. Callers load a
category, change the in-memory list by product id, and save it back.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable, List, Optional, Union

from harvest.config import AGGREGATE_FILENAME, CATEGORIES, CATEGORIES_FILE, DATA_DIR
from harvest.logging_config import get_logger
from harvest.merge import dedupe_by_id
from harvest.models import Category, Product

__all__ = ["DatasetStore", "DatasetError"]

logger = get_logger("store")


class DatasetError(Exception):
    """Raised when an existing dataset document can't be read."""
    pass


class DatasetStore:
    """Reads and writes the per-category and aggregate JSON documents."""

    def __init__(self, data_dir: Union[str, Path] = DATA_DIR):
        self.data_dir = Path(data_dir)

    def path_for(self, slug: str) -> Path:
        return self.data_dir / f"{slug}.json"

    @property
    def aggregate_path(self) -> Path:
        return self.data_dir / AGGREGATE_FILENAME

    # ------------------------------------------------------------------

    def _read(self, path: Path) -> List[Product]:
        if not path.exists():
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise DatasetError(f"Cannot read {path}: {e}") from e
        if not isinstance(data, list):
            raise DatasetError(f"{path} does not hold a JSON array")
        for index, item in enumerate(data):
            if not isinstance(item, dict):
                raise DatasetError(f"{path} holds a non-object record at index {index}")
        return [Product.from_dict(item) for item in data]

    def _write(self, path: Path, payload: Any) -> None:
        """Write the whole document to a temp file, then swap it in."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
                f.write("\n")
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------

    def load_category(self, slug: str) -> List[Product]:
        """Products of one category; empty if the document doesn't exist yet."""
        return self._read(self.path_for(slug))

    def save_category(self, slug: str, products: List[Product]) -> Path:
        """Overwrite a category document with ``products``."""
        path = self.path_for(slug)
        self._write(path, [p.to_dict() for p in products])
        logger.debug(f"Saved {len(products)} products to {path}")
        return path

    def load_aggregate(self) -> List[Product]:
        return self._read(self.aggregate_path)

    def category_slugs_on_disk(self) -> List[str]:
        """Slugs of all category documents present, excluding the aggregate."""
        if not self.data_dir.exists():
            return []
        return sorted(
            p.stem for p in self.data_dir.glob("*.json") if p.name != AGGREGATE_FILENAME
        )

    def rebuild_aggregate(self, category_slugs: Optional[Iterable[str]] = None) -> int:
        """Concatenate category documents into the aggregate document.

        Categories are taken in configuration order (unless given
        explicitly), then any other documents on disk. A product listed in
        several categories appears once, under the first.

        Returns:
            Number of products in the aggregate
        """
        if category_slugs is None:
            configured = [c.slug for c in CATEGORIES]
            extra = [s for s in self.category_slugs_on_disk() if s not in configured]
            category_slugs = configured + extra

        products: List[Product] = []
        for slug in category_slugs:
            products.extend(self.load_category(slug))
        unique = dedupe_by_id(products)

        self._write(self.aggregate_path, [p.to_dict() for p in unique])
        logger.info(f"Rebuilt {AGGREGATE_FILENAME}: {len(unique)} products")
        return len(unique)

    def write_categories(
        self,
        categories: Iterable[Category] = CATEGORIES,
        path: Union[str, Path, None] = None,
    ) -> Path:
        """Write the static category table for the storefront."""
        target = Path(path) if path else self.data_dir.parent / CATEGORIES_FILE.name
        self._write(target, [c.to_dict() for c in categories])
        return target
