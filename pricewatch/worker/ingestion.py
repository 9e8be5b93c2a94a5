"""Persist a ProductShell: product upsert, variant reconciliation, history."""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.db.models import Product, StockStatus, Variant, utcnow
from pricewatch.detect.change_detector import ChangeDetector, ChangeEvent
from pricewatch.detect.variant_reconciler import VariantReconciler
from pricewatch.extract.shell import ProductShell, VariantCandidate

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    product_id: int
    variant_ids: List[int] = field(default_factory=list)
    created_variants: int = 0
    events: List[ChangeEvent] = field(default_factory=list)


class ProductIngestion:
    """
    Applies one extraction to the store inside the caller's transaction.

    Variants are resolved through the reconciler; a matched row takes the
    candidate's attributes so later subset matches keep converging on it.
    """

    def __init__(
        self,
        reconciler: Optional[VariantReconciler] = None,
        detector: Optional[ChangeDetector] = None,
    ):
        self.reconciler = reconciler or VariantReconciler()
        self.detector = detector or ChangeDetector()

    async def upsert_product(
        self,
        session: AsyncSession,
        shell: ProductShell,
        product_id: Optional[int] = None,
    ) -> Product:
        if product_id is not None:
            product = await session.get(Product, product_id)
            if product is None:
                raise LookupError(f"Product {product_id} does not exist")
        else:
            urls = {u for u in (shell.canonical_url, shell.url) if u}
            product = (
                await session.execute(
                    select(Product).where(Product.canonical_url.in_(urls)).order_by(Product.id).limit(1)
                )
            ).scalar_one_or_none()
            if product is None:
                product = Product(canonical_url=shell.canonical_url or shell.url)
                session.add(product)
                logger.info(f"Tracking new product {product.canonical_url}")

        if shell.name:
            product.display_name = shell.name
        if shell.image_url:
            product.primary_image_url = shell.image_url
        await session.flush()
        return product

    async def _apply_variant(
        self,
        session: AsyncSession,
        product_id: int,
        candidate: VariantCandidate,
        claimed: List[int],
    ) -> tuple:
        now = utcnow()
        variant_id = await self.reconciler.resolve(
            session, product_id, candidate.attributes, candidate.sku, exclude=claimed
        )

        if variant_id is None:
            variant = Variant(
                product_id=product_id,
                attributes=dict(candidate.attributes),
                sku=candidate.sku,
                current_price=candidate.price,
                currency=candidate.currency,
                current_stock_status=(candidate.stock_status or StockStatus.UNKNOWN).value,
                last_checked_at=now,
            )
            session.add(variant)
            await session.flush()
            return variant, True

        variant = await session.get(Variant, variant_id)
        if variant.attributes != candidate.attributes:
            variant.attributes = dict(candidate.attributes)
        if candidate.sku and not variant.sku:
            variant.sku = candidate.sku
        if candidate.price is not None:
            variant.current_price = candidate.price
            variant.currency = candidate.currency
        variant.current_stock_status = (candidate.stock_status or StockStatus.UNKNOWN).value
        variant.last_checked_at = now
        await session.flush()
        return variant, False

    async def apply(
        self,
        session: AsyncSession,
        shell: ProductShell,
        product_id: Optional[int] = None,
    ) -> IngestResult:
        """
        Upsert the product and its variants and record history.

        Args:
            session: Session with an open transaction (caller commits)
            shell: Extraction result
            product_id: Existing product to update; None to upsert by URL
        """
        product = await self.upsert_product(session, shell, product_id)
        result = IngestResult(product_id=product.id)

        for candidate in shell.variants:
            variant, created = await self._apply_variant(session, product.id, candidate, result.variant_ids)
            result.variant_ids.append(variant.id)
            result.created_variants += int(created)
            result.events.extend(
                await self.detector.record(
                    session,
                    variant.id,
                    candidate.price,
                    candidate.currency,
                    candidate.stock_status,
                    product_id=product.id,
                )
            )
        return result
