"""Download product images to local storage and point the dataset at them.

Files are named ``<productId>-<index>.jpg``. A file that already exists
is never downloaded again, and an image that fails to download keeps its
original URL.
"""

import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Union

import requests  # type: ignore[import-untyped]

from harvest.config import IMAGES_DIR, MIRROR_BASE_URL, MIRROR_DELAY, MIRROR_TIMEOUT
from harvest.fetcher import create_session
from harvest.logging_config import get_logger, log_pipeline_event
from harvest.models import Product, ProductImage
from harvest.store import DatasetStore
from harvest.url_validation import URLValidationError, validate_url

__all__ = ["MirrorSummary", "image_filename", "download_image", "mirror_products", "mirror_category"]

logger = get_logger("mirror")


@dataclass
class MirrorSummary:
    slug: str
    downloaded: int = 0
    cached: int = 0
    failed: int = 0

    def summary(self) -> str:
        return f"{self.slug}: {self.downloaded} downloaded, {self.cached} cached, {self.failed} failed"


def image_filename(product_id: str, index: int) -> str:
    return f"{product_id}-{index}.jpg"


def download_image(
    url: str,
    dest: Path,
    session: Optional[requests.Session] = None,
    timeout: float = MIRROR_TIMEOUT,
) -> bool:
    """Stream an image to ``dest``. Returns False on any failure.

    The body goes to a temp file next to ``dest`` and is moved into place
    only once complete, so an interrupted download leaves nothing behind.
    """
    try:
        validate_url(url)
    except URLValidationError as e:
        logger.warning(f"Skipping image {url}: {e}")
        return False

    sess = session or create_session()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".part", dir=dest.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            with sess.get(url, stream=True, timeout=timeout) as resp:
                if resp.status_code != 200:
                    logger.warning(f"HTTP {resp.status_code} for {url}")
                    Path(tmp_name).unlink(missing_ok=True)
                    return False
                for chunk in resp.iter_content(chunk_size=8192):
                    if chunk:
                        f.write(chunk)
        os.replace(tmp_name, dest)
        return True
    except (requests.RequestException, OSError) as e:
        logger.warning(f"Download failed for {url}: {e}")
        Path(tmp_name).unlink(missing_ok=True)
        return False


def mirror_products(
    products: List[Product],
    summary: MirrorSummary,
    images_dir: Union[str, Path] = IMAGES_DIR,
    base_url: str = MIRROR_BASE_URL,
    session: Optional[requests.Session] = None,
    delay: float = MIRROR_DELAY,
    sleep: Callable[[float], None] = time.sleep,
    download: Callable[..., bool] = download_image,
) -> None:
    """Mirror every product image in place, counting into ``summary``."""
    images_dir = Path(images_dir)
    base_url = base_url.rstrip("/")

    for product in products:
        mirrored: List[ProductImage] = []
        for index, img in enumerate(product.images):
            if img.url.startswith(base_url + "/"):
                mirrored.append(img)
                continue

            filename = image_filename(product.id, index)
            local_url = f"{base_url}/{filename}"
            dest = images_dir / filename
            if dest.exists():
                summary.cached += 1
                mirrored.append(ProductImage(url=local_url, alt=img.alt))
                continue

            if download(img.url, dest, session=session):
                summary.downloaded += 1
                mirrored.append(ProductImage(url=local_url, alt=img.alt))
            else:
                summary.failed += 1
                mirrored.append(img)
            sleep(delay)
        product.images = mirrored


def mirror_category(
    slug: str,
    store: DatasetStore,
    images_dir: Union[str, Path] = IMAGES_DIR,
    base_url: str = MIRROR_BASE_URL,
    session: Optional[requests.Session] = None,
    delay: float = MIRROR_DELAY,
    sleep: Callable[[float], None] = time.sleep,
    download: Callable[..., bool] = download_image,
) -> MirrorSummary:
    """Mirror one category's images and save the rewritten document.

    The document is saved even if mirroring stops part way.
    """
    products = store.load_category(slug)
    summary = MirrorSummary(slug=slug)
    sess = session or create_session()
    logger.info(f"Mirroring images for {slug} ({len(products)} products)")

    try:
        mirror_products(products, summary, images_dir, base_url, sess, delay, sleep, download)
    finally:
        store.save_category(slug, products)

    logger.info(summary.summary())
    log_pipeline_event("mirror_complete", {
        "category": slug,
        "downloaded": summary.downloaded,
        "cached": summary.cached,
        "failed": summary.failed,
    }, logger_name="mirror")
    return summary
