"""HTTP fetching for source-site pages.

Two entry points share one contract: ``fetch_html`` (requests, used by the
sequential category crawl) and ``fetch_html_async`` (aiohttp, used by the
batched image re-fetch). Both send browser-like headers, follow 301/302
one hop per call, and turn every failure into a ``FetchError``. Neither
retries; callers decide whether a failure is worth another attempt.
"""

import asyncio
import random
from typing import Dict, Optional
from urllib.parse import urljoin

import aiohttp
import requests  # type: ignore[import-untyped]

from harvest.config import (
    HEADERS,
    MAX_REDIRECTS,
    MAX_RETRY_BACKOFF,
    REFETCH_TIMEOUT,
    REQUEST_TIMEOUT,
    RETRY_BACKOFF_BASE,
    RETRY_STATUS_CODES,
)
from harvest.logging_config import get_logger
from harvest.url_validation import URLValidationError, validate_url

__all__ = [
    "FetchError",
    "NetworkError",
    "FetchTimeoutError",
    "HttpStatusError",
    "create_session",
    "create_async_session",
    "fetch_html",
    "fetch_html_async",
    "is_retryable",
    "backoff_delay",
]

logger = get_logger("fetcher")

REDIRECT_STATUSES = (301, 302)

# Module-level session for connection reuse
_session: Optional[requests.Session] = None


class FetchError(Exception):
    """Base class for fetch failures."""

    def __init__(self, url: str, message: str):
        super().__init__(f"{message} ({url})")
        self.url = url
        self.reason = message


class NetworkError(FetchError):
    """DNS, connection or socket failure."""


class FetchTimeoutError(FetchError, TimeoutError):
    """The request exceeded its deadline and was aborted."""


class HttpStatusError(FetchError):
    """The final response was not 200."""

    def __init__(self, url: str, status: int):
        super().__init__(url, f"HTTP {status}")
        self.status = status


def create_session() -> requests.Session:
    """Create a requests Session with browser-like headers.

    Redirects are handled by ``fetch_html`` itself, not by the session.
    """
    session = requests.Session()
    session.headers.update(HEADERS)
    session.headers.setdefault("Accept-Encoding", "gzip, deflate")
    return session


def _get_session() -> requests.Session:
    """Get or create the module-level session."""
    global _session
    if _session is None:
        _session = create_session()
    return _session


def create_async_session() -> aiohttp.ClientSession:
    """Create an aiohttp session with browser-like headers.

    Must be called from inside a running event loop.
    """
    return aiohttp.ClientSession(headers=HEADERS)


def _checked_url(url: str) -> str:
    try:
        return validate_url(url)
    except URLValidationError as e:
        raise FetchError(url, f"Invalid URL: {e}") from e


def _merged_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    merged = dict(HEADERS)
    if headers:
        merged.update(headers)
    return merged


def fetch_html(
    url: str,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = REQUEST_TIMEOUT,
    follow_redirects: bool = True,
    session: Optional[requests.Session] = None,
    _hops: int = 0,
) -> str:
    """GET a page and return its HTML.

    Args:
        url: Absolute URL to fetch
        headers: Header overrides merged over the browser defaults
        timeout: Seconds before the request is aborted
        follow_redirects: Re-issue the request at the Location of a 301/302
        session: Optional requests.Session for connection reuse

    Returns:
        Response body as text

    Raises:
        HttpStatusError: Final status was not 200
        NetworkError: Connection or DNS failure
        FetchTimeoutError: Deadline exceeded
        FetchError: URL rejected before fetching
    """
    url = _checked_url(url)
    sess = session or _get_session()

    try:
        resp = sess.get(
            url,
            headers=_merged_headers(headers),
            timeout=timeout,
            allow_redirects=False,
        )
    except requests.exceptions.Timeout as e:
        raise FetchTimeoutError(url, f"Timed out after {timeout}s") from e
    except requests.exceptions.ConnectionError as e:
        raise NetworkError(url, f"Connection failed: {e}") from e
    except requests.exceptions.RequestException as e:
        raise NetworkError(url, f"Request failed: {e}") from e

    location = resp.headers.get("Location")
    if follow_redirects and resp.status_code in REDIRECT_STATUSES and location:
        if _hops >= MAX_REDIRECTS:
            raise HttpStatusError(url, resp.status_code)
        target = urljoin(url, location)
        logger.debug(f"Redirect {resp.status_code}: {url} -> {target}")
        return fetch_html(
            target,
            headers=headers,
            timeout=timeout,
            follow_redirects=True,
            session=sess,
            _hops=_hops + 1,
        )

    if resp.status_code != 200:
        raise HttpStatusError(url, resp.status_code)

    return str(resp.text)


async def fetch_html_async(
    session: aiohttp.ClientSession,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = REFETCH_TIMEOUT,
    follow_redirects: bool = True,
    _hops: int = 0,
) -> str:
    """Async counterpart of ``fetch_html``; same arguments and errors."""
    url = _checked_url(url)
    redirect_to: Optional[str] = None

    try:
        async with session.get(
            url,
            headers=_merged_headers(headers),
            timeout=aiohttp.ClientTimeout(total=timeout),
            allow_redirects=False,
        ) as resp:
            location = resp.headers.get("Location")
            if follow_redirects and resp.status in REDIRECT_STATUSES and location:
                if _hops >= MAX_REDIRECTS:
                    raise HttpStatusError(url, resp.status)
                redirect_to = urljoin(url, location)
            elif resp.status != 200:
                raise HttpStatusError(url, resp.status)
            else:
                return await resp.text(errors="replace")
    except asyncio.TimeoutError as e:
        raise FetchTimeoutError(url, f"Timed out after {timeout}s") from e
    except aiohttp.ClientError as e:
        raise NetworkError(url, f"Connection failed: {e}") from e

    # Only the redirect branch leaves the block without returning or raising.
    assert redirect_to is not None
    logger.debug(f"Redirect: {url} -> {redirect_to}")
    return await fetch_html_async(
        session,
        redirect_to,
        headers=headers,
        timeout=timeout,
        follow_redirects=True,
        _hops=_hops + 1,
    )


def is_retryable(error: Exception) -> bool:
    """Whether a failed fetch is worth another attempt."""
    if isinstance(error, HttpStatusError):
        return error.status in RETRY_STATUS_CODES
    return isinstance(error, (NetworkError, FetchTimeoutError))


def backoff_delay(attempt: int) -> float:
    """Exponential backoff with jitter for the given (0-based) attempt."""
    return min(RETRY_BACKOFF_BASE ** attempt, MAX_RETRY_BACKOFF) + random.uniform(0, 1)
