"""Known JSON payload shapes, validated at the boundary.

Every JSON blob found on a page (or returned by a storefront endpoint) is
classified into one of three tagged shapes:

- ``StorefrontPayload``: a storefront product object with variants/options
- ``JsonLdPayload``: schema.org Product / ProductGroup entries
- ``GenericPayload``: anything else, searched key-by-key as a fallback
"""

import logging
import re
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pricewatch.db.models import StockStatus
from pricewatch.extract.price import currency_from_token, to_cents, to_decimal
from pricewatch.extract.stock import normalize_availability

logger = logging.getLogger(__name__)

MAX_DEPTH = 10

PRICE_KEYS = ("price", "currentPrice", "current_price", "salePrice", "sale_price", "finalPrice", "priceValue")
CURRENCY_KEYS = ("currency", "priceCurrency", "currencyCode", "currency_code")
AVAILABILITY_KEYS = (
    "availability",
    "available",
    "isAvailable",
    "is_available",
    "inStock",
    "in_stock",
    "isInStock",
    "stockStatus",
    "stock_status",
)
SOLD_OUT_KEYS = ("soldOut", "sold_out", "isSoldOut")
QUANTITY_KEYS = ("inventory_quantity", "inventoryQuantity", "quantity", "stockLevel", "stock")
VARIANT_KEYS = ("variants", "skus", "variations", "productVariants", "childSkus")
ATTRIBUTE_NAMES = (
    "size", "color", "colour", "length", "style", "material", "waist", "inseam",
    "width", "height", "fit", "flavor", "flavour", "pattern", "finish", "edition", "capacity",
)
EXCLUDED_ATTRIBUTE_KEYS = {"id", "sku", "price", "title", "name", "url", "image", "available", "barcode"}


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)


# ============================================================================
# Storefront (Shopify-style) products
# ============================================================================

class StorefrontOption(_Payload):
    name: str
    position: Optional[int] = None
    values: List[str] = Field(default_factory=list)


class StorefrontVariant(_Payload):
    id: Optional[Union[int, str]] = None
    sku: Optional[str] = None
    title: Optional[str] = None
    price: Optional[Union[int, float, str]] = None
    available: Optional[bool] = None
    inventory_quantity: Optional[int] = None
    option1: Optional[str] = None
    option2: Optional[str] = None
    option3: Optional[str] = None

    def option_values(self) -> List[Optional[str]]:
        return [self.option1, self.option2, self.option3]


class StorefrontProduct(_Payload):
    title: Optional[str] = None
    handle: Optional[str] = None
    vendor: Optional[str] = None
    price: Optional[Union[int, float, str]] = None
    available: Optional[bool] = None
    variants: List[StorefrontVariant] = Field(default_factory=list)
    options: List[Union[StorefrontOption, str]] = Field(default_factory=list)
    images: List[Union[str, Dict[str, Any]]] = Field(default_factory=list)
    image: Optional[Union[str, Dict[str, Any]]] = None
    featured_image: Optional[Union[str, Dict[str, Any]]] = None

    def option_names(self) -> List[str]:
        return [o if isinstance(o, str) else o.name for o in self.options]

    def image_url(self) -> Optional[str]:
        for candidate in (self.featured_image, self.image, *self.images):
            src = candidate.get("src") if isinstance(candidate, dict) else candidate
            if src:
                return "https:" + src if src.startswith("//") else src
        return None


def storefront_amount(value: Union[int, float, str, None]) -> Optional[Decimal]:
    """Storefront prices: integers are minor units (cents), strings are decimal."""
    if isinstance(value, int) and not isinstance(value, bool):
        return to_cents(Decimal(value).scaleb(-2))
    return to_decimal(value)


class StorefrontPayload(_Payload):
    kind: Literal["storefront"] = "storefront"
    product: StorefrontProduct


# ============================================================================
# schema.org JSON-LD
# ============================================================================

class JsonLdOffer(_Payload):
    price: Optional[Union[str, int, float]] = None
    low_price: Optional[Union[str, int, float]] = Field(None, alias="lowPrice")
    price_currency: Optional[str] = Field(None, alias="priceCurrency")
    availability: Optional[str] = None
    sku: Optional[str] = None
    price_specification: Optional[Union[Dict[str, Any], List[Dict[str, Any]]]] = Field(
        None, alias="priceSpecification"
    )

    def amount(self) -> Optional[Decimal]:
        amount = to_decimal(self.price) or to_decimal(self.low_price)
        if amount is None and self.price_specification:
            specs = self.price_specification
            for spec in specs if isinstance(specs, list) else [specs]:
                amount = to_decimal(spec.get("price"))
                if amount is not None:
                    break
        return amount


class JsonLdProduct(_Payload):
    type_: Optional[Union[str, List[str]]] = Field(None, alias="@type")
    name: Optional[str] = None
    sku: Optional[str] = None
    image: Optional[Union[str, Dict[str, Any], List[Union[str, Dict[str, Any]]]]] = None
    offers: Optional[Union[JsonLdOffer, List[JsonLdOffer]]] = None
    color: Optional[str] = None
    size: Optional[Union[str, Dict[str, Any]]] = None
    material: Optional[str] = None
    pattern: Optional[str] = None
    additional_property: Optional[List[Dict[str, Any]]] = Field(None, alias="additionalProperty")
    has_variant: List["JsonLdProduct"] = Field(default_factory=list, alias="hasVariant")

    def offer_list(self) -> List[JsonLdOffer]:
        if self.offers is None:
            return []
        return self.offers if isinstance(self.offers, list) else [self.offers]

    def first_price(self) -> Optional[tuple]:
        for offer in self.offer_list():
            amount = offer.amount()
            if amount is not None:
                return amount, currency_from_token(offer.price_currency)
        return None

    def stock_status(self) -> Optional[StockStatus]:
        statuses = [normalize_availability(o.availability) for o in self.offer_list()]
        statuses = [s for s in statuses if s is not None]
        if not statuses:
            return None
        if StockStatus.IN_STOCK in statuses:
            return StockStatus.IN_STOCK
        return statuses[0]

    def image_url(self) -> Optional[str]:
        images = self.image if isinstance(self.image, list) else [self.image]
        for image in images:
            url = image.get("url") or image.get("contentUrl") if isinstance(image, dict) else image
            if url:
                return url
        return None

    def attributes(self) -> Dict[str, str]:
        attrs: Dict[str, str] = {}
        for key in ("color", "size", "material", "pattern"):
            value = getattr(self, key)
            if isinstance(value, dict):
                value = value.get("name")
            if value:
                attrs[key] = str(value).strip()
        for prop in self.additional_property or []:
            name, value = prop.get("name"), prop.get("value")
            if name and value is not None:
                attrs[normalize_attribute_name(str(name))] = str(value).strip()
        return attrs


JsonLdProduct.model_rebuild()


class JsonLdPayload(_Payload):
    kind: Literal["json_ld"] = "json_ld"
    products: List[JsonLdProduct]

    @property
    def primary(self) -> JsonLdProduct:
        for product in self.products:
            if product.has_variant:
                return product
        return self.products[0]


# ============================================================================
# Generic fallback
# ============================================================================

class GenericPayload(_Payload):
    kind: Literal["generic"] = "generic"
    data: Any = None
    source: str = "generic_json"


Payload = Union[StorefrontPayload, JsonLdPayload, GenericPayload]


def normalize_attribute_name(name: str) -> str:
    """``options[Size]`` -> ``size``; ``Shoe Width`` -> ``shoe_width``."""
    match = re.search(r"options?\[(.+?)\]", name, re.I)
    if match:
        name = match.group(1)
    name = re.sub(r"[^\w\s-]", "", name).strip().lower()
    return re.sub(r"[\s\-]+", "_", name)


def _is_storefront_product(data: Dict[str, Any]) -> bool:
    return isinstance(data.get("variants"), list) and ("title" in data or "handle" in data)


def classify_payload(data: Any, source: str = "generic_json") -> Payload:
    """
    Validate a JSON blob against the known shapes, falling back to generic.

    Args:
        data: Decoded JSON
        source: Label for the generic fallback (e.g. "next_data")
    """
    if isinstance(data, dict):
        product = data.get("product") if isinstance(data.get("product"), dict) else data
        if _is_storefront_product(product):
            try:
                return StorefrontPayload(product=StorefrontProduct.model_validate(product))
            except ValidationError as e:
                logger.debug(f"Storefront-like payload failed validation: {e.error_count()} errors")

    if isinstance(data, dict) and "@type" in data:
        data = [data]
    if isinstance(data, list) and data and all(isinstance(d, dict) and "@type" in d for d in data):
        try:
            return JsonLdPayload(products=[JsonLdProduct.model_validate(d) for d in data])
        except ValidationError as e:
            logger.debug(f"JSON-LD payload failed validation: {e.error_count()} errors")

    return GenericPayload(data=data, source=source)


# ============================================================================
# Generic JSON walkers
# ============================================================================

def _walk(data: Any, depth: int = 0) -> Iterator[Dict[str, Any]]:
    """Yield every dict in a JSON tree, breadth-limited to MAX_DEPTH."""
    if depth > MAX_DEPTH:
        return
    if isinstance(data, dict):
        yield data
        for value in data.values():
            if isinstance(value, (dict, list)):
                yield from _walk(value, depth + 1)
    elif isinstance(data, list):
        for item in data:
            if isinstance(item, (dict, list)):
                yield from _walk(item, depth + 1)


def _price_from_dict(obj: Dict[str, Any]) -> Optional[tuple]:
    for key in PRICE_KEYS:
        if key not in obj:
            continue
        value = obj[key]
        currency = next((obj[k] for k in CURRENCY_KEYS if isinstance(obj.get(k), str)), None)
        if isinstance(value, dict):
            currency = currency or value.get("currency") or value.get("currencyCode")
            value = value.get("value", value.get("amount"))
        amount = to_decimal(value)
        if amount is not None:
            return amount, currency_from_token(currency) if currency else None
    return None


def _stock_from_dict(obj: Dict[str, Any]) -> Optional[StockStatus]:
    for key in AVAILABILITY_KEYS:
        if key in obj:
            status = normalize_availability(obj[key])
            if status is not None:
                return status
    for key in SOLD_OUT_KEYS:
        if isinstance(obj.get(key), bool):
            return StockStatus.OUT_OF_STOCK if obj[key] else StockStatus.IN_STOCK
    for key in QUANTITY_KEYS:
        value = obj.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return StockStatus.IN_STOCK if value > 0 else StockStatus.OUT_OF_STOCK
    return None


def generic_price(data: Any) -> Optional[tuple]:
    """First (amount, currency) found anywhere in the tree."""
    for obj in _walk(data):
        found = _price_from_dict(obj)
        if found:
            return found
    return None


def generic_stock(data: Any) -> Optional[StockStatus]:
    for obj in _walk(data):
        status = _stock_from_dict(obj)
        if status is not None:
            return status
    return None


def generic_name(data: Any) -> Optional[str]:
    for obj in _walk(data):
        if _price_from_dict(obj) is None:
            continue
        for key in ("name", "title", "productName"):
            if isinstance(obj.get(key), str) and obj[key].strip():
                return obj[key].strip()
    return None


def _item_attributes(item: Dict[str, Any]) -> Dict[str, str]:
    attrs: Dict[str, str] = {}
    for key, value in item.items():
        name = normalize_attribute_name(key)
        if name in EXCLUDED_ATTRIBUTE_KEYS or not isinstance(value, (str, int, float)):
            continue
        if any(pattern in name for pattern in ATTRIBUTE_NAMES) or name.startswith("option"):
            attrs[name] = str(value).strip()

    for list_key in ("attributes", "selectedOptions", "options"):
        entries = item.get(list_key)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if isinstance(entry, dict) and entry.get("name") and entry.get("value") is not None:
                attrs[normalize_attribute_name(str(entry["name"]))] = str(entry["value"]).strip()
    return {k: v for k, v in attrs.items() if k and v}


def generic_variants(data: Any) -> List[Dict[str, Any]]:
    """
    Find a variant list and describe each entry.

    Returns:
        Dicts with attributes, sku, price, currency and stock (may be None)
    """
    for obj in _walk(data):
        for key in VARIANT_KEYS:
            items = obj.get(key)
            if not isinstance(items, list) or not items or not all(isinstance(i, dict) for i in items):
                continue
            found = []
            for item in items:
                attributes = _item_attributes(item)
                sku = item.get("sku")
                if not attributes and not sku:
                    continue
                price = _price_from_dict(item)
                found.append(
                    {
                        "attributes": attributes,
                        "sku": str(sku) if sku else None,
                        "price": price[0] if price else None,
                        "currency": price[1] if price else None,
                        "stock": _stock_from_dict(item),
                    }
                )
            if found:
                return found
    return []
