"""URL validation and sanitization utilities.

Checks applied to every URL before it is fetched or written into the
dataset: scheme, host, and a few injection patterns.
"""

import re
from typing import FrozenSet, Optional
from urllib.parse import urlparse

__all__ = [
    "validate_url",
    "sanitize_url",
    "is_absolute_http_url",
    "URLValidationError",
    "ALLOWED_DOMAINS",
]


class URLValidationError(Exception):
    """Raised when URL validation fails."""
    pass


# Hosts the pipeline is allowed to request
ALLOWED_DOMAINS: FrozenSet[str] = frozenset({
    "amsterdammodern.com",
    "www.amsterdammodern.com",
    "ammod-pro.s3.us-west-1.amazonaws.com",
    "ammod-pro.s3.amazonaws.com",
    "picsum.photos",
    "fastly.picsum.photos",
})

ABSOLUTE_HTTP_URL_RE = re.compile(r"^https?://[^\s/?#]+[^\s]*$", re.IGNORECASE)

DANGEROUS_SCHEMES = {"javascript", "data", "vbscript", "file"}

SUSPICIOUS_PATTERNS = (
    r"\.\./",
    r"%2e%2e",
    r"<script",
    r"javascript:",
)


def sanitize_url(url: str) -> str:
    """Strip surrounding whitespace, control characters and null bytes."""
    if not url:
        return ""
    url = url.strip()
    url = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", url)
    return url.replace("%00", "")


def is_absolute_http_url(url: str) -> bool:
    """True for a syntactically absolute http(s) URL with a host."""
    return bool(url) and ABSOLUTE_HTTP_URL_RE.match(url) is not None


def validate_url(
    url: str,
    allowed_domains: Optional[FrozenSet[str]] = None,
    require_https: bool = False,
) -> str:
    """Validate a URL for safety.

    Args:
        url: URL to validate
        allowed_domains: Hosts to accept (default: ALLOWED_DOMAINS);
            an empty set accepts any host
        require_https: Whether to require HTTPS scheme

    Returns:
        The sanitized URL

    Raises:
        URLValidationError: If URL is invalid or from an untrusted host
    """
    if not url:
        raise URLValidationError("URL is empty")

    url = sanitize_url(url)

    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise URLValidationError(f"Failed to parse URL: {e}") from e

    scheme = parsed.scheme.lower()
    if scheme in DANGEROUS_SCHEMES:
        raise URLValidationError(f"Dangerous URL scheme: {scheme}")
    if require_https and scheme != "https":
        raise URLValidationError(f"URL must use HTTPS, got: {scheme}")
    if scheme not in ("http", "https"):
        raise URLValidationError(f"Invalid URL scheme: {scheme!r}")

    host = (parsed.hostname or "").lower()
    if not host:
        raise URLValidationError("URL has no host")

    domains = ALLOWED_DOMAINS if allowed_domains is None else allowed_domains
    if domains and host not in domains:
        raise URLValidationError(f"URL host '{host}' is not an allowed domain")

    url_lower = url.lower()
    for pattern in SUSPICIOUS_PATTERNS:
        if re.search(pattern, url_lower):
            raise URLValidationError(f"URL contains suspicious pattern: {pattern}")

    return url
