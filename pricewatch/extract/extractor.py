"""Structured extraction: fetched content -> ProductShell.

Every field is resolved by a cascade that stops at the first confident
answer. Structured sources (JSON-LD, storefront JSON, other embedded JSON)
are preferred over DOM heuristics. Missing fields stay empty; only a page
with neither a name nor any variant is an ExtractionError.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import urljoin

from selectolax.parser import HTMLParser

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.db.models import StockStatus
from pricewatch.extract.payloads import (
    GenericPayload,
    JsonLdPayload,
    Payload,
    StorefrontPayload,
    classify_payload,
    generic_name,
    generic_price,
    generic_stock,
    generic_variants,
    normalize_attribute_name,
    storefront_amount,
)
from pricewatch.extract.price import currency_from_token, price_from_dom
from pricewatch.extract.shell import ExtractionError, PriceInfo, ProductShell, VariantCandidate
from pricewatch.extract.stock import stock_from_dom
from pricewatch.extract.variants import MAX_VARIANTS, combine_option_groups, dom_option_groups
from pricewatch.ingest.fetcher import ContentKind, FetchResult
from pricewatch.ingest.json_extractor import (
    extract_json_ld,
    extract_next_data,
    extract_storefront_json,
    find_json_ld_products,
)

logger = logging.getLogger(__name__)

# Scripts other than JSON data blocks, styles and comments never carry product data
_NON_JSON_SCRIPT_RE = re.compile(
    r"<script\b(?![^>]*\btype\s*=\s*[\"']?application/(?:ld\+)?json)[^>]*>.*?</script\s*>",
    re.I | re.S,
)
_STYLE_RE = re.compile(r"<style\b[^>]*>.*?</style\s*>", re.I | re.S)
_COMMENT_RE = re.compile(r"<!--.*?-->", re.S)

DEFAULT_OPTION_VALUE = "Default Title"

TITLE_SELECTORS = [
    ".product-title",
    ".product__title",
    ".product-name",
    ".product_title",
    '[itemprop="name"]',
    "[data-product-title]",
]
IMAGE_SELECTORS = [
    ".product__media img",
    ".product-image img",
    ".product-gallery img",
    "#product-image img",
    'img[itemprop="image"]',
]


def strip_non_content(html: str) -> str:
    """Drop executable scripts, styles and comments before DOM parsing."""
    html = _COMMENT_RE.sub("", html)
    html = _STYLE_RE.sub("", html)
    return _NON_JSON_SCRIPT_RE.sub("", html)


@dataclass
class PageSources:
    """Structured blobs found on the page plus the stripped DOM."""

    json_ld: Optional[JsonLdPayload] = None
    storefront: Optional[StorefrontPayload] = None
    generic: List[GenericPayload] = field(default_factory=list)
    tree: Optional[HTMLParser] = None

    def add(self, payload: Payload):
        if isinstance(payload, JsonLdPayload) and self.json_ld is None:
            self.json_ld = payload
        elif isinstance(payload, StorefrontPayload) and self.storefront is None:
            self.storefront = payload
        elif isinstance(payload, GenericPayload):
            self.generic.append(payload)

    def describe(self) -> dict:
        return {
            "json_ld": self.json_ld is not None,
            "storefront_json": self.storefront is not None,
            "generic_json": [g.source for g in self.generic],
            "dom": self.tree is not None,
        }


def _meta(tree: Optional[HTMLParser], selector: str) -> Optional[str]:
    if tree is None:
        return None
    node = tree.css_first(selector)
    if node is None:
        return None
    value = (node.attributes.get("content") or node.attributes.get("href") or "").strip()
    return value or None


def _text(tree: Optional[HTMLParser], selector: str) -> Optional[str]:
    if tree is None:
        return None
    node = tree.css_first(selector)
    if node is None:
        return None
    text = " ".join(node.text(separator=" ", strip=True).split())
    return text or None


def _absolute(url: Optional[str], base: str) -> Optional[str]:
    if not url:
        return None
    if url.startswith("//"):
        return "https:" + url
    return urljoin(base, url)


class StructuredExtractor:
    """Extracts a ProductShell from a FetchResult."""

    def __init__(self, max_content_bytes: Optional[int] = None, max_variants: int = MAX_VARIANTS):
        self.max_content_bytes = max_content_bytes or settings.max_content_bytes
        self.max_variants = max_variants

    def extract(self, result: FetchResult) -> ProductShell:
        """
        Extract product data.

        Raises:
            ExtractionError: no content, or neither a name nor any variant
        """
        if not result.success or not result.content:
            raise ExtractionError(f"No content to extract for {result.url}")

        sources = self._collect_sources(result)
        base_url = result.final_url or result.url

        price = self._price(sources)
        stock_status, stock_source = self._stock(sources)
        variants = self._variants(sources, price, stock_status)

        shell = ProductShell(
            url=result.url,
            final_url=result.final_url,
            canonical_url=self._canonical_url(sources, base_url),
            name=self._name(sources),
            image_url=_absolute(self._image(sources), base_url),
            description=self._description(sources),
            price=price,
            stock_status=stock_status,
            stock_source=stock_source,
            variants=variants,
            metadata={
                "mode_used": result.mode_used.value,
                "content_length": len(result.content),
                "price_source": price.source if price else None,
                "sources": sources.describe(),
            },
        )

        if not shell.name and not shell.variants:
            metrics.record_extraction_failure()
            logger.warning(
                f"Extraction found nothing for {result.url}: {len(result.content)} chars "
                f"of {result.content_kind.value} via {result.mode_used.value}, "
                f"sources={sources.describe()}"
            )
            raise ExtractionError(f"No product name or variants found at {result.url}")

        return shell

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def _collect_sources(self, result: FetchResult) -> PageSources:
        content = result.content
        if len(content) > self.max_content_bytes:
            logger.warning(
                f"Truncating {len(content)} chars from {result.url} to {self.max_content_bytes}"
            )
            content = content[: self.max_content_bytes]

        sources = PageSources()
        if result.content_kind == ContentKind.STOREFRONT_JSON:
            try:
                data = json.loads(content)
            except ValueError as e:
                raise ExtractionError(f"Storefront JSON from {result.url} did not parse: {e}") from e
            sources.add(classify_payload(data, source="storefront_json"))
            return sources

        tree = HTMLParser(strip_non_content(content))

        products = find_json_ld_products(extract_json_ld(tree))
        if products:
            sources.add(classify_payload(products, source="json_ld"))

        embedded = extract_storefront_json(tree)
        if embedded is not None:
            sources.add(classify_payload(embedded, source="embedded_json"))

        next_data = extract_next_data(tree)
        if next_data is not None:
            sources.add(GenericPayload(data=next_data, source="next_data"))

        tree.strip_tags(["script", "noscript", "template", "svg"])
        sources.tree = tree
        return sources

    # ------------------------------------------------------------------
    # Descriptive fields
    # ------------------------------------------------------------------

    def _name(self, sources: PageSources) -> Optional[str]:
        tree = sources.tree
        candidates = [
            sources.json_ld.primary.name if sources.json_ld else None,
            sources.storefront.product.title if sources.storefront else None,
            _meta(tree, 'meta[property="og:title"]'),
            _meta(tree, 'meta[name="twitter:title"]'),
            *(_text(tree, s) for s in TITLE_SELECTORS),
            _text(tree, "h1"),
            _meta(tree, 'meta[name="title"]'),
        ]
        for candidate in candidates:
            if candidate and candidate.strip():
                return candidate.strip()

        title = _text(tree, "title")
        if title:
            return title.split("|")[0].strip() or None

        for payload in sources.generic:
            name = generic_name(payload.data)
            if name:
                return name
        return None

    def _image(self, sources: PageSources) -> Optional[str]:
        tree = sources.tree
        candidates = [
            _meta(tree, 'meta[property="og:image"]'),
            _meta(tree, 'meta[name="twitter:image"]'),
            sources.json_ld.primary.image_url() if sources.json_ld else None,
            sources.storefront.product.image_url() if sources.storefront else None,
        ]
        if tree is not None:
            for selector in IMAGE_SELECTORS:
                node = tree.css_first(selector)
                if node is not None:
                    candidates.append(node.attributes.get("src") or node.attributes.get("data-src"))
        return next((c for c in candidates if c), None)

    def _description(self, sources: PageSources) -> Optional[str]:
        tree = sources.tree
        for selector in (
            'meta[name="description"]',
            'meta[property="og:description"]',
            'meta[name="twitter:description"]',
        ):
            value = _meta(tree, selector)
            if value:
                return value[:2000]
        return None

    def _canonical_url(self, sources: PageSources, base_url: str) -> str:
        tree = sources.tree
        canonical = _meta(tree, 'link[rel="canonical"]') or _meta(tree, 'meta[property="og:url"]')
        return _absolute(canonical, base_url) or base_url

    # ------------------------------------------------------------------
    # Price / stock / variants
    # ------------------------------------------------------------------

    def _page_currency(self, sources: PageSources) -> Optional[str]:
        for selector in ('meta[property="product:price:currency"]', 'meta[property="og:price:currency"]'):
            currency = currency_from_token(_meta(sources.tree, selector))
            if currency:
                return currency
        return None

    def _price(self, sources: PageSources) -> Optional[PriceInfo]:
        if sources.json_ld:
            primary = sources.json_ld.primary
            found = primary.first_price()
            for variant in primary.has_variant:
                if found:
                    break
                found = variant.first_price()
            if found:
                return PriceInfo(
                    amount=found[0],
                    currency=found[1] or self._page_currency(sources),
                    source="json_ld",
                )

        if sources.storefront:
            product = sources.storefront.product
            available = [v for v in product.variants if v.available is not False]
            for value in [product.price] + [v.price for v in available + product.variants]:
                amount = storefront_amount(value)
                if amount is not None:
                    return PriceInfo(amount=amount, currency=self._page_currency(sources), source="storefront_json")

        for payload in sources.generic:
            found = generic_price(payload.data)
            if found:
                return PriceInfo(amount=found[0], currency=found[1], source=payload.source)

        if sources.tree is not None:
            return price_from_dom(sources.tree)
        return None

    def _stock(self, sources: PageSources) -> Tuple[StockStatus, Optional[str]]:
        if sources.json_ld:
            primary = sources.json_ld.primary
            status = primary.stock_status()
            if status is None and primary.has_variant:
                statuses = [v.stock_status() for v in primary.has_variant]
                if StockStatus.IN_STOCK in statuses:
                    status = StockStatus.IN_STOCK
                elif StockStatus.OUT_OF_STOCK in statuses:
                    status = StockStatus.OUT_OF_STOCK
            if status is not None:
                return status, "json_ld"

        if sources.storefront:
            product = sources.storefront.product
            flags = [v.available for v in product.variants if v.available is not None]
            if product.available is not None:
                return normalize_flag(product.available), "storefront_json"
            if flags:
                return normalize_flag(any(flags)), "storefront_json"

        for payload in sources.generic:
            status = generic_stock(payload.data)
            if status is not None:
                return status, payload.source

        if sources.tree is not None:
            return stock_from_dom(sources.tree)
        return StockStatus.UNKNOWN, None

    def _variants(
        self,
        sources: PageSources,
        price: Optional[PriceInfo],
        stock_status: StockStatus,
    ) -> List[VariantCandidate]:
        candidates = (
            self._storefront_variants(sources)
            or self._json_ld_variants(sources)
            or self._generic_variants(sources)
            or (combine_option_groups(dom_option_groups(sources.tree), self.max_variants) if sources.tree else [])
        )

        if not candidates and (price is not None or stock_status != StockStatus.UNKNOWN):
            candidates = [VariantCandidate(attributes={}, source="product")]

        unique: List[VariantCandidate] = []
        seen = set()
        for candidate in candidates:
            key = candidate.identity()
            if key in seen:
                continue
            seen.add(key)

            if candidate.price is None and price is not None:
                candidate.price = price.amount
                candidate.currency = candidate.currency or price.currency
            elif candidate.currency is None and price is not None:
                candidate.currency = price.currency
            if candidate.stock_status is None:
                candidate.stock_status = stock_status

            unique.append(candidate)
            if len(unique) >= self.max_variants:
                break
        return unique

    def _storefront_variants(self, sources: PageSources) -> List[VariantCandidate]:
        if not sources.storefront:
            return []
        product = sources.storefront.product
        names = product.option_names()

        candidates = []
        for variant in product.variants:
            attributes = {}
            for index, value in enumerate(variant.option_values()):
                if value is None or value == DEFAULT_OPTION_VALUE:
                    continue
                name = names[index] if index < len(names) else f"option{index + 1}"
                attributes[normalize_attribute_name(name)] = value.strip()

            status = None
            if variant.available is not None:
                status = normalize_flag(variant.available)
            elif variant.inventory_quantity is not None:
                status = normalize_flag(variant.inventory_quantity > 0)

            candidates.append(
                VariantCandidate(
                    attributes=attributes,
                    sku=variant.sku or None,
                    price=storefront_amount(variant.price),
                    stock_status=status,
                    source="storefront_json",
                )
            )
        return candidates

    def _json_ld_variants(self, sources: PageSources) -> List[VariantCandidate]:
        if not sources.json_ld:
            return []
        candidates = []
        for item in sources.json_ld.primary.has_variant:
            attributes = item.attributes()
            if not attributes and not item.sku:
                continue
            found = item.first_price()
            candidates.append(
                VariantCandidate(
                    attributes=attributes,
                    sku=item.sku or None,
                    price=found[0] if found else None,
                    currency=found[1] if found else None,
                    stock_status=item.stock_status(),
                    source="json_ld",
                )
            )
        return candidates

    def _generic_variants(self, sources: PageSources) -> List[VariantCandidate]:
        for payload in sources.generic:
            found = generic_variants(payload.data)
            if found:
                return [
                    VariantCandidate(
                        attributes=item["attributes"],
                        sku=item["sku"],
                        price=item["price"],
                        currency=item["currency"],
                        stock_status=item["stock"],
                        source=payload.source,
                    )
                    for item in found
                ]
        return []


def normalize_flag(available: bool) -> StockStatus:
    return StockStatus.IN_STOCK if available else StockStatus.OUT_OF_STOCK
