"""In-memory product records produced by extraction."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pricewatch.db.models import StockStatus


class ExtractionError(Exception):
    """Raised when neither a product name nor any variant could be recovered."""

    pass


@dataclass
class PriceInfo:
    amount: Decimal
    currency: Optional[str] = None
    source: str = ""  # json_ld, storefront_json, generic_json, dom:meta, dom:text ...


@dataclass
class VariantCandidate:
    """One purchasable configuration as seen on the page."""

    attributes: Dict[str, str] = field(default_factory=dict)
    sku: Optional[str] = None
    price: Optional[Decimal] = None
    currency: Optional[str] = None
    stock_status: Optional[StockStatus] = None  # None inherits the product-level status
    source: str = ""

    def identity(self) -> tuple:
        """Key used to drop duplicate candidates within one page."""
        if self.sku:
            return ("sku", self.sku)
        return ("attrs", tuple(sorted(self.attributes.items())))


@dataclass
class ProductShell:
    """Normalized product data extracted from one fetch, before persistence."""

    url: str
    final_url: Optional[str] = None
    canonical_url: Optional[str] = None
    name: Optional[str] = None
    image_url: Optional[str] = None
    description: Optional[str] = None
    price: Optional[PriceInfo] = None
    stock_status: StockStatus = StockStatus.UNKNOWN
    stock_source: Optional[str] = None
    variants: List[VariantCandidate] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
