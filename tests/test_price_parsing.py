"""Tests for price and stock parsing helpers."""

from decimal import Decimal

import pytest
from selectolax.parser import HTMLParser

from pricewatch.db.models import StockStatus
from pricewatch.extract.price import normalize_amount, parse_price, price_from_dom, to_decimal
from pricewatch.extract.stock import normalize_availability, stock_from_dom


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("29.99", Decimal("29.99")),
        ("1,299.00", Decimal("1299.00")),
        ("1.234,56", Decimal("1234.56")),
        ("29,99", Decimal("29.99")),
        ("1.234", Decimal("1234.00")),
        ("1 234,50", Decimal("1234.50")),
    ],
)
def test_normalize_amount(raw, expected):
    assert normalize_amount(raw) == expected


def test_parse_price_symbols():
    assert parse_price("Now $1,299.00") == (Decimal("1299.00"), "USD")
    assert parse_price("29,99 €") == (Decimal("29.99"), "EUR")
    assert parse_price("£15") == (Decimal("15.00"), "GBP")
    assert parse_price("GBP 15.50") == (Decimal("15.50"), "GBP")
    assert parse_price("₹499") == (Decimal("499.00"), "INR")


def test_parse_price_requires_currency():
    assert parse_price("Only 3 left", require_currency=True) is None
    assert parse_price("42.00") == (Decimal("42.00"), None)
    assert parse_price("") is None


def test_to_decimal():
    assert to_decimal(19.5) == Decimal("19.50")
    assert to_decimal("USD 12.00") == Decimal("12.00")
    assert to_decimal(0) is None
    assert to_decimal(True) is None


def test_price_from_dom_prefers_meta():
    tree = HTMLParser(
        """
        <html><head>
        <meta property="product:price:amount" content="49.00">
        <meta property="product:price:currency" content="EUR">
        </head><body><span class="price">$10.00</span></body></html>
        """
    )
    info = price_from_dom(tree)
    assert info.amount == Decimal("49.00")
    assert info.currency == "EUR"
    assert info.source == "dom:meta"


def test_price_from_dom_selector():
    tree = HTMLParser('<html><body><div class="product-price">Sale $24.99</div></body></html>')
    info = price_from_dom(tree)
    assert info.amount == Decimal("24.99")
    assert info.source == "dom:selector"


@pytest.mark.parametrize(
    "value,expected",
    [
        ("https://schema.org/InStock", StockStatus.IN_STOCK),
        ("http://schema.org/LimitedAvailability", StockStatus.IN_STOCK),
        ("OutOfStock", StockStatus.OUT_OF_STOCK),
        ("PreOrder", StockStatus.OUT_OF_STOCK),
        ("sold_out", StockStatus.OUT_OF_STOCK),
        (True, StockStatus.IN_STOCK),
        ("something else", None),
    ],
)
def test_normalize_availability(value, expected):
    assert normalize_availability(value) == expected


def test_stock_from_dom_cascade():
    disabled = HTMLParser('<html><body><button name="add" disabled>Add to cart</button></body></html>')
    assert stock_from_dom(disabled) == (StockStatus.OUT_OF_STOCK, "dom:button")

    enabled = HTMLParser('<html><body><button name="add">Add to cart</button></body></html>')
    assert stock_from_dom(enabled) == (StockStatus.IN_STOCK, "dom:button")

    text_only = HTMLParser("<html><body><p>This item is sold out.</p></body></html>")
    assert stock_from_dom(text_only) == (StockStatus.OUT_OF_STOCK, "dom:text")

    nothing = HTMLParser("<html><body><p>Hello</p></body></html>")
    assert stock_from_dom(nothing) == (StockStatus.UNKNOWN, None)


@pytest.mark.parametrize("raw", ["9" * 40, "10000000000", "NaN", "Infinity", "0"])
def test_normalize_amount_rejects_unstorable(raw):
    assert normalize_amount(raw) is None


def test_normalize_amount_upper_bound():
    assert normalize_amount("9999999999.99") == Decimal("9999999999.99")


def test_to_decimal_rejects_non_finite_and_huge():
    assert to_decimal(float("nan")) is None
    assert to_decimal(float("inf")) is None
    assert to_decimal(1e40) is None
    assert to_decimal(10**40) is None
    assert to_decimal("USD " + "9" * 40) is None


def test_parse_price_huge_amount_is_ignored():
    assert parse_price("Price USD " + "9" * 40, require_currency=True) is None
