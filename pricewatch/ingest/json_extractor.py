"""Extract embedded JSON (JSON-LD, storefront blobs, __NEXT_DATA__) from HTML."""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from selectolax.parser import HTMLParser

logger = logging.getLogger(__name__)

PRODUCT_TYPES = {"Product", "ProductGroup", "IndividualProduct", "ProductModel"}

# Cheap pre-check before parsing the whole document
_JSON_LD_PRODUCT_RE = re.compile(
    r'"@type"\s*:\s*(?:\[[^\]]*)?"(?:https?://schema\.org/)?(?:Product|ProductGroup)"'
)


def _load(text: Optional[str]) -> Any:
    if not text or not text.strip():
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def _type_names(obj: Dict[str, Any]) -> List[str]:
    raw = obj.get("@type", "")
    names = raw if isinstance(raw, list) else [raw]
    return [str(n).rsplit("/", 1)[-1] for n in names if n]


def extract_json_ld(tree: HTMLParser) -> List[Dict[str, Any]]:
    """
    Extract JSON-LD objects from script tags.

    ``@graph`` containers and top-level arrays are flattened.
    """
    results: List[Dict[str, Any]] = []
    for script in tree.css('script[type="application/ld+json"]'):
        data = _load(script.text())
        if data is None:
            continue
        stack = data if isinstance(data, list) else [data]
        for item in stack:
            if not isinstance(item, dict):
                continue
            graph = item.get("@graph")
            if isinstance(graph, list):
                results.extend(g for g in graph if isinstance(g, dict))
            else:
                results.append(item)
    return results


def find_json_ld_products(objects: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Filter JSON-LD objects down to Product-like entries (ItemList unwrapped)."""
    products = []
    for obj in objects:
        types = _type_names(obj)
        if any(t in PRODUCT_TYPES for t in types):
            products.append(obj)
        elif "ItemList" in types:
            for element in obj.get("itemListElement", []) or []:
                item = element.get("item") if isinstance(element, dict) else None
                if isinstance(item, dict) and any(t in PRODUCT_TYPES for t in _type_names(item)):
                    products.append(item)
    return products


def has_json_ld_product(html: str) -> bool:
    """True if the page carries a schema.org Product block."""
    if not html or not _JSON_LD_PRODUCT_RE.search(html):
        return False
    return bool(find_json_ld_products(extract_json_ld(HTMLParser(html))))


def extract_next_data(tree: HTMLParser) -> Optional[Dict[str, Any]]:
    """Extract the __NEXT_DATA__ blob used by Next.js storefronts."""
    node = tree.css_first("script#__NEXT_DATA__")
    data = _load(node.text()) if node else None
    return data if isinstance(data, dict) else None


def extract_storefront_json(tree: HTMLParser) -> Optional[Dict[str, Any]]:
    """
    Find an embedded storefront product blob.

    Themes commonly ship the product as ``<script type="application/json">``
    with ids such as ``product-json`` or a ``data-product-json`` attribute.
    """
    preferred = tree.css(
        'script#product-json, script#ProductJson, script[data-product-json], '
        'script[id^="ProductJson-"]'
    )
    for script in preferred:
        data = _load(script.text())
        if isinstance(data, dict):
            return data

    for script in tree.css('script[type="application/json"]'):
        data = _load(script.text())
        if not isinstance(data, dict):
            continue
        if isinstance(data.get("product"), dict):
            return data
        if isinstance(data.get("variants"), list) and ("title" in data or "handle" in data):
            return data
    return None
