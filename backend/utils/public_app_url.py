"""
Deployment origin for Stripe redirect URLs (checkout success/cancel, portal return).
Stripe must only ever redirect back to this deployment, so every redirect URL is built here.
"""
import re
from typing import Optional


HTTP_URL_REGEX = re.compile(r"^https?://", re.IGNORECASE)


def get_public_origin(app_url: Optional[str], request_base_url: str) -> str:
    """
    Return the origin (scheme + host, no trailing slash) redirect URLs are built on.

    APP_URL wins when set; otherwise the origin the request arrived on. Anything
    that is not an http(s) URL is rejected with ValueError.
    """
    raw = (app_url or "").strip() or (request_base_url or "").strip()
    raw = raw.rstrip("/")
    if not HTTP_URL_REGEX.match(raw):
        raise ValueError(f"Public origin must be an http(s) URL, got {raw!r}")
    return raw


def absolute_url(origin: str, path_or_url: str) -> str:
    """
    Resolve a configured page against the origin.

    absolute_url("https://app.example.com", "/billing/manage") -> "https://app.example.com/billing/manage"
    Absolute http(s) URLs are returned unchanged.
    """
    if HTTP_URL_REGEX.match(path_or_url):
        return path_or_url
    path = path_or_url if path_or_url.startswith("/") else f"/{path_or_url}"
    return f"{origin}{path}"
