"""Price parsing and DOM price heuristics."""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple

from selectolax.parser import HTMLParser

from pricewatch.extract.shell import PriceInfo

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
# NUMERIC(12,2) upper bound
MAX_AMOUNT = Decimal("1e10")

CURRENCY_SYMBOLS = {
    "US$": "USD",
    "C$": "CAD",
    "A$": "AUD",
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "₹": "INR",
}

CURRENCY_CODES = (
    "USD", "EUR", "GBP", "JPY", "INR", "CAD", "AUD", "NZD", "CHF",
    "SEK", "NOK", "DKK", "PLN", "MXN", "BRL", "CNY", "HKD", "SGD",
)

_SYMBOL_PATTERN = "|".join(re.escape(s) for s in CURRENCY_SYMBOLS)
_CODE_PATTERN = "|".join(CURRENCY_CODES)
_AMOUNT_PATTERN = r"\d{1,3}(?:[.,\u00a0\u202f]\d{3})+(?:[.,]\d{1,2})?|\d+(?:[.,]\d{1,2})?"

# Currency before or after the amount: "$29.99", "USD 29.99", "29,99 €"
PRICE_RE = re.compile(
    rf"(?P<pre>{_SYMBOL_PATTERN}|\b(?:{_CODE_PATTERN})\b)\s*(?P<amount_a>{_AMOUNT_PATTERN})"
    rf"|(?P<amount_b>{_AMOUNT_PATTERN})\s*(?P<post>{_SYMBOL_PATTERN}|\b(?:{_CODE_PATTERN})\b)"
)
BARE_AMOUNT_RE = re.compile(rf"(?<![\d.,])(?:{_AMOUNT_PATTERN})(?![\d])")

META_PRICE_SELECTORS = [
    ('meta[property="product:price:amount"]', 'meta[property="product:price:currency"]'),
    ('meta[property="og:price:amount"]', 'meta[property="og:price:currency"]'),
    ('[itemprop="price"]', '[itemprop="priceCurrency"]'),
]

PRICE_SELECTORS = [
    "[data-product-price]",
    ".price__current",
    ".product-price",
    ".product__price",
    ".price--sale",
    ".sale-price",
    ".price-item--sale",
    ".price",
    '[class*="price"]',
]


def to_cents(value: Decimal) -> Optional[Decimal]:
    """Round to two places; None unless the amount is finite, positive and storable."""
    try:
        if not value.is_finite() or value <= 0 or value >= MAX_AMOUNT:
            return None
        return value.quantize(CENT)
    except InvalidOperation:
        return None


def normalize_amount(raw: str) -> Optional[Decimal]:
    """
    Turn a localized amount string into a Decimal with two places.

    Handles ``1,234.56``, ``1.234,56``, ``29,99``, ``1 234`` and ``1.234``.
    """
    text = raw.strip().replace("\u00a0", "").replace("\u202f", "").replace(" ", "")
    if not text:
        return None

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        head, _, tail = text.rpartition(",")
        if len(tail) in (1, 2) and text.count(",") == 1:
            text = f"{head}.{tail}"
        else:
            text = text.replace(",", "")
    elif text.count(".") > 1:
        text = text.replace(".", "")
    elif "." in text and len(text.rpartition(".")[2]) == 3:
        text = text.replace(".", "")

    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    return to_cents(value)


def currency_from_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    token = token.strip()
    if token.upper() in CURRENCY_CODES:
        return token.upper()
    return CURRENCY_SYMBOLS.get(token)


def parse_price(text: Optional[str], require_currency: bool = False) -> Optional[Tuple[Decimal, Optional[str]]]:
    """
    Find the first price in a piece of text.

    Args:
        text: Free text such as "Now $1,299.00"
        require_currency: Only accept amounts next to a currency symbol/code

    Returns:
        (amount, currency) or None
    """
    if not text:
        return None

    match = PRICE_RE.search(text)
    if match:
        raw_amount = match.group("amount_a") or match.group("amount_b")
        currency = currency_from_token(match.group("pre") or match.group("post"))
        amount = normalize_amount(raw_amount)
        if amount is not None and amount > 0:
            return amount, currency

    if require_currency:
        return None

    bare = BARE_AMOUNT_RE.search(text)
    if bare:
        amount = normalize_amount(bare.group(0))
        if amount is not None and amount > 0:
            return amount, None
    return None


def to_decimal(value: Any) -> Optional[Decimal]:
    """Coerce a JSON price value (number or string) to a positive Decimal."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return to_cents(Decimal(str(value)))
        except (InvalidOperation, ValueError):
            return None
    parsed = parse_price(str(value))
    return parsed[0] if parsed else None


def _node_value(node) -> Optional[str]:
    attrs = node.attributes
    for key in ("content", "data-price", "value"):
        value = attrs.get(key)
        if value:
            return value
    return node.text(strip=True) or None


def price_from_dom(tree: HTMLParser) -> Optional[PriceInfo]:
    """
    DOM price heuristics, most explicit first.

    Meta/itemprop tags, then price-classed elements, then a scan of the body
    text for an amount next to a currency symbol.
    """
    for amount_selector, currency_selector in META_PRICE_SELECTORS:
        node = tree.css_first(amount_selector)
        if node is None:
            continue
        parsed = parse_price(_node_value(node))
        if not parsed:
            continue
        currency_node = tree.css_first(currency_selector)
        currency = currency_from_token(_node_value(currency_node)) if currency_node else None
        return PriceInfo(amount=parsed[0], currency=currency or parsed[1], source="dom:meta")

    for selector in PRICE_SELECTORS:
        for node in tree.css(selector)[:10]:
            text = node.text(separator=" ", strip=True)
            if not text or len(text) > 120:
                continue
            parsed = parse_price(text, require_currency=True)
            if parsed:
                return PriceInfo(amount=parsed[0], currency=parsed[1], source="dom:selector")

    body = tree.body
    if body is not None:
        parsed = parse_price(body.text(separator=" ", strip=True), require_currency=True)
        if parsed:
            return PriceInfo(amount=parsed[0], currency=parsed[1], source="dom:text")

    return None
