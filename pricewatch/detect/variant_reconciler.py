"""Resolve extracted variants to existing variant rows.

Cascade, first hit wins:

1. exact attribute-set match
2. subset match: the stored attributes are a subset of the candidate's
   (a storefront added a new distinguishing attribute)
3. SKU match within the same product

Attribute comparison ignores key case and value case/whitespace.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.db.models import Variant

logger = logging.getLogger(__name__)


class MatchRule(str, Enum):
    EXACT = "exact"
    SUBSET = "subset"
    SKU = "sku"


@dataclass(frozen=True)
class StoredVariant:
    id: int
    attributes: Dict[str, str]
    sku: Optional[str] = None


@dataclass(frozen=True)
class VariantMatch:
    variant_id: int
    rule: MatchRule


def normalize_attributes(attributes: Optional[Dict[str, str]]) -> Dict[str, str]:
    return {
        str(key).strip().lower(): " ".join(str(value).split()).casefold()
        for key, value in (attributes or {}).items()
    }


def match_variant(
    stored: Iterable[StoredVariant],
    candidate_attributes: Dict[str, str],
    candidate_sku: Optional[str] = None,
    exclude: Sequence[int] = (),
) -> Optional[VariantMatch]:
    """
    Pure matching over already-loaded rows.

    Among several subset matches the most specific stored set wins, then the
    oldest row.
    """
    rows = sorted((r for r in stored if r.id not in exclude), key=lambda r: r.id)
    candidate = normalize_attributes(candidate_attributes)
    normalized: Dict[int, Dict[str, str]] = {r.id: normalize_attributes(r.attributes) for r in rows}

    for row in rows:
        if normalized[row.id] == candidate:
            return VariantMatch(row.id, MatchRule.EXACT)

    subset_hits = [
        row for row in rows if normalized[row.id].items() <= candidate.items()
    ]
    if subset_hits:
        best = max(subset_hits, key=lambda r: (len(normalized[r.id]), -r.id))
        return VariantMatch(best.id, MatchRule.SUBSET)

    if candidate_sku:
        sku = candidate_sku.strip()
        for row in rows:
            if row.sku and row.sku.strip() == sku:
                return VariantMatch(row.id, MatchRule.SKU)

    return None


class VariantReconciler:
    """Looks up a product's variants and applies the match cascade."""

    async def load(self, session: AsyncSession, product_id: int) -> list[StoredVariant]:
        result = await session.execute(
            select(Variant.id, Variant.attributes, Variant.sku)
            .where(Variant.product_id == product_id)
            .order_by(Variant.id)
        )
        return [StoredVariant(id=row.id, attributes=row.attributes or {}, sku=row.sku) for row in result]

    async def match(
        self,
        session: AsyncSession,
        product_id: int,
        candidate_attributes: Dict[str, str],
        candidate_sku: Optional[str] = None,
        exclude: Sequence[int] = (),
    ) -> Optional[VariantMatch]:
        stored = await self.load(session, product_id)
        found = match_variant(stored, candidate_attributes, candidate_sku, exclude)
        if found and found.rule != MatchRule.EXACT:
            logger.debug(
                f"Variant {found.variant_id} of product {product_id} matched by "
                f"{found.rule.value} rule for {candidate_attributes} (sku={candidate_sku})"
            )
        return found

    async def resolve(
        self,
        session: AsyncSession,
        product_id: int,
        candidate_attributes: Dict[str, str],
        candidate_sku: Optional[str] = None,
        exclude: Sequence[int] = (),
    ) -> Optional[int]:
        """
        Map a candidate to an existing variant id.

        Returns:
            Variant id, or None when the caller should create a new row
        """
        found = await self.match(session, product_id, candidate_attributes, candidate_sku, exclude)
        return found.variant_id if found else None
