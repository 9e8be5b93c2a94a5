"""Stock status detection: availability flags, cart button state, page text."""

import logging
import re
from typing import Any, Optional, Tuple

from selectolax.parser import HTMLParser

from pricewatch.db.models import StockStatus

logger = logging.getLogger(__name__)

# schema.org ItemAvailability plus common storefront wording, compacted
IN_STOCK_TOKENS = {
    "instock",
    "limitedavailability",
    "onlineonly",
    "instoreonly",
    "available",
    "instockonline",
    "lowstock",
    "true",
}
OUT_OF_STOCK_TOKENS = {
    "outofstock",
    "soldout",
    "discontinued",
    "preorder",
    "presale",
    "backorder",
    "unavailable",
    "notavailable",
    "false",
}

AVAILABILITY_SELECTORS = [
    'meta[property="product:availability"]',
    'meta[property="og:availability"]',
    '[itemprop="availability"]',
]

BUTTON_SELECTORS = (
    'button, input[type="submit"], [name="add"], .add-to-cart, #AddToCart, '
    '[data-add-to-cart], [data-testid*="add-to-cart"]'
)

ADD_TO_CART_RE = re.compile(r"add\s+to\s+(?:cart|bag|basket|trolley)|buy\s+(?:it\s+)?now", re.I)
SOLD_OUT_BUTTON_RE = re.compile(
    r"sold\s*out|out\s+of\s+stock|unavailable|notify\s+me|email\s+me\s+when", re.I
)

OUT_OF_STOCK_TEXT = re.compile(
    r"\b(?:sold\s*out|out\s+of\s+stock|currently\s+unavailable|no\s+longer\s+available|"
    r"not\s+in\s+stock|temporarily\s+unavailable)\b",
    re.I,
)
IN_STOCK_TEXT = re.compile(r"\b(?:in\s+stock|available\s+now|ready\s+to\s+ship|ships\s+today)\b", re.I)


def normalize_availability(value: Any) -> Optional[StockStatus]:
    """
    Map an availability flag to a StockStatus.

    Accepts booleans, schema.org URLs ("https://schema.org/InStock") and
    loose wording ("in stock", "sold_out").
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return StockStatus.IN_STOCK if value else StockStatus.OUT_OF_STOCK

    token = str(value).rsplit("/", 1)[-1]
    token = re.sub(r"[\s_\-]", "", token).lower()
    if token in IN_STOCK_TOKENS:
        return StockStatus.IN_STOCK
    if token in OUT_OF_STOCK_TOKENS:
        return StockStatus.OUT_OF_STOCK
    return None


def _flag_value(node) -> Optional[str]:
    attrs = node.attributes
    return attrs.get("content") or attrs.get("href") or node.text(strip=True) or None


def _button_label(node) -> str:
    attrs = node.attributes
    parts = [node.text(separator=" ", strip=True), attrs.get("value") or "", attrs.get("aria-label") or ""]
    return " ".join(p for p in parts if p)


def _is_disabled(node) -> bool:
    attrs = node.attributes
    if "disabled" in attrs:
        return True
    if (attrs.get("aria-disabled") or "").lower() == "true":
        return True
    return "disabled" in (attrs.get("class") or "").split()


def stock_from_flags(tree: HTMLParser) -> Optional[StockStatus]:
    """Explicit availability markup (meta tags, itemprop)."""
    for selector in AVAILABILITY_SELECTORS:
        for node in tree.css(selector):
            status = normalize_availability(_flag_value(node))
            if status is not None:
                return status
    return None


def stock_from_button(tree: HTMLParser) -> Optional[StockStatus]:
    """
    Infer stock from the add-to-cart control.

    An enabled add-to-cart button means in stock; a disabled one, or a
    "sold out" / "notify me" button, means out of stock.
    """
    saw_disabled_cart = False
    for node in tree.css(BUTTON_SELECTORS):
        label = _button_label(node)
        if not label:
            continue
        if SOLD_OUT_BUTTON_RE.search(label):
            return StockStatus.OUT_OF_STOCK
        if ADD_TO_CART_RE.search(label):
            if not _is_disabled(node):
                return StockStatus.IN_STOCK
            saw_disabled_cart = True
    return StockStatus.OUT_OF_STOCK if saw_disabled_cart else None


def stock_from_text(tree: HTMLParser) -> Optional[StockStatus]:
    """Last-resort wording scan of the visible body text."""
    body = tree.body
    if body is None:
        return None
    text = body.text(separator=" ", strip=True)
    if OUT_OF_STOCK_TEXT.search(text):
        return StockStatus.OUT_OF_STOCK
    if IN_STOCK_TEXT.search(text):
        return StockStatus.IN_STOCK
    return None


def stock_from_dom(tree: HTMLParser) -> Tuple[StockStatus, Optional[str]]:
    """
    Run the DOM stock cascade.

    Returns:
        (status, source) where source names the step that decided, or None
    """
    for source, step in (
        ("dom:flags", stock_from_flags),
        ("dom:button", stock_from_button),
        ("dom:text", stock_from_text),
    ):
        status = step(tree)
        if status is not None:
            return status, source
    return StockStatus.UNKNOWN, None
