"""Storefront platform detection and JSON endpoint discovery."""

import json
import logging
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)

SHOPIFY = "shopify"

SHOPIFY_HOST_SUFFIX = ".myshopify.com"
SHOPIFY_MARKERS = (
    "cdn.shopify.com",
    "Shopify.theme",
    "window.Shopify",
    "shopify-section",
)


def detect_storefront(url: str, html: Optional[str] = None) -> Optional[str]:
    """
    Identify a known storefront platform from the URL or page markup.

    Returns:
        Platform name or None
    """
    host = (urlsplit(url).hostname or "").lower()
    if host.endswith(SHOPIFY_HOST_SUFFIX):
        return SHOPIFY
    if html and any(marker in html for marker in SHOPIFY_MARKERS):
        return SHOPIFY
    return None


def json_probe_urls(url: str) -> list[str]:
    """
    Candidate JSON endpoints for a storefront product URL, cheapest first.

    ``?view=json`` keeps the existing query string; the suffix forms drop the
    query, fragment and trailing slash.
    """
    parts = urlsplit(url)
    view_query = f"{parts.query}&view=json" if parts.query else "view=json"
    view_json = urlunsplit((parts.scheme, parts.netloc, parts.path, view_query, ""))

    base_path = parts.path.rstrip("/")
    base = urlunsplit((parts.scheme, parts.netloc, base_path, "", ""))

    candidates = [view_json, f"{base}.json", f"{base}/product.json"]
    return list(dict.fromkeys(candidates))


def parse_product_payload(text: str) -> Optional[dict[str, Any]]:
    """
    Parse a JSON probe response, keeping it only if it describes a product.

    Accepts the wrapped form ``{"product": {...}}`` and bare product objects
    with a ``variants`` list.
    """
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, TypeError, ValueError):
        return None

    if not isinstance(payload, dict):
        return None
    if isinstance(payload.get("product"), dict):
        return payload
    if isinstance(payload.get("variants"), list) and ("title" in payload or "handle" in payload):
        return payload
    return None
