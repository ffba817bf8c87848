"""Shared test fixtures for the harvest test suite."""

import logging
from typing import Dict, Iterable, List, Optional

import pytest

from harvest.config import BASE_URL, SMALL_VARIANT
from harvest.fetcher import HttpStatusError, NetworkError
from harvest.models import Product, ProductImage
from harvest.store import DatasetStore

STORAGE = "https://ammod-pro.s3.us-west-1.amazonaws.com"


def _slugify(name: str) -> str:
    return name.lower().replace(" ", "-")


def build_listing_item(
    product_id: str,
    name: str,
    info: str,
    category: str = "1-LIGHTING",
    thumb: Optional[str] = None,
) -> str:
    href = f"/categories/{category}/{product_id}-{_slugify(name)}"
    thumb = thumb or f"{STORAGE}/thumbs/{product_id}.jpg"
    return (
        f'<li><a href="{href}"><img src="{thumb}" alt=""></a>'
        f'<a href="{href}"><h2>{name}</h2><p>{info}</p></a></li>'
    )


def build_listing_page(items: Iterable[str], next_href: Optional[str] = None, pages: int = 0) -> str:
    links = "".join(f'<a href="?page={n}">{n}</a>' for n in range(1, pages + 1))
    if next_href:
        links += f'<a href="{next_href}">Next</a>'
    pagination = f'<div class="pagination">{links}</div>' if links else ""
    return f"<html><body><ul>{''.join(items)}</ul>{pagination}</body></html>"


def build_detail_page(
    designer: str = "Pierre Jeanneret / Chandigarh / India",
    description: str = " ".join(["teak"] * 150),
    size: str = "W 50 x D 60 x H 80 cm",
    images: Iterable[str] = (),
) -> str:
    imgs = "".join(f'<img src="{src}">' for src in images)
    return (
        "<html><body>"
        f"<p>{designer}</p>"
        f"<p>{description}</p>"
        "<p>© 2024 Amsterdam Modern / info@amsterdammodern.com</p>"
        f'<table><tr><td>Size:</td><td>{size}</td></tr></table>'
        f"{imgs}"
        "</body></html>"
    )


def storage_image(name: str, variant: str = SMALL_VARIANT, size: str = "400x300") -> str:
    return f"{STORAGE}/rails/active_storage/representations/proxy/key/{variant}/{size}/{name}"


def make_product(product_id: str, images: Optional[List[str]] = None, **kwargs) -> Product:
    defaults = dict(
        slug=f"item-{product_id}",
        name=f"Item {product_id}",
        price=100,
        price_formatted="$100.00",
        category="LIGHTING",
        url=f"{BASE_URL}/categories/1-LIGHTING/{product_id}-item-{product_id}",
    )
    defaults.update(kwargs)
    if images is None:
        images = [f"{STORAGE}/stored/{product_id}.jpg"]
    return Product(
        id=product_id,
        images=[ProductImage(url=u, alt=defaults["name"]) for u in images],
        **defaults,
    )


class FakeFetcher:
    """Sync stand-in for fetch_html serving canned pages by URL."""

    def __init__(self, pages: Dict[str, str], failures: Iterable[str] = ()):
        self.pages = pages
        self.failures = set(failures)
        self.calls: List[str] = []

    def __call__(self, url: str, session=None) -> str:
        self.calls.append(url)
        if url in self.failures:
            raise NetworkError(url, "Connection failed: simulated")
        if url not in self.pages:
            raise HttpStatusError(url, 404)
        return self.pages[url]


class FakeAsyncFetcher:
    """Async stand-in for the re-fetch page loader."""

    def __init__(self, pages: Dict[str, str], failures: Iterable[str] = ()):
        self.pages = pages
        self.failures = set(failures)
        self.calls: List[str] = []

    async def __call__(self, url: str) -> str:
        self.calls.append(url)
        if url in self.failures:
            raise NetworkError(url, "Connection failed: simulated")
        if url not in self.pages:
            raise HttpStatusError(url, 404)
        return self.pages[url]


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def listing_item():
    return build_listing_item


@pytest.fixture
def listing_page():
    return build_listing_page


@pytest.fixture
def detail_page():
    return build_detail_page


@pytest.fixture
def product_factory():
    return make_product


@pytest.fixture
def store(tmp_path):
    """DatasetStore rooted in a temporary products directory."""
    return DatasetStore(tmp_path / "products")


@pytest.fixture
def fake_fetcher():
    return FakeFetcher


@pytest.fixture
def fake_async_fetcher():
    return FakeAsyncFetcher


@pytest.fixture
def async_no_sleep():
    return no_sleep


@pytest.fixture
def storage_url():
    return storage_image


@pytest.fixture(autouse=True)
def reset_harvest_logger():
    """Drop handlers a test (e.g. the CLI) attached to the package logger."""
    yield
    logger = logging.getLogger("harvest")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
