"""Append-only price/stock history and change events."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.db.models import PriceHistory, StockHistory, StockStatus, utcnow
from pricewatch.extract.price import CENT

logger = logging.getLogger(__name__)

RESTOCK_FROM = {StockStatus.OUT_OF_STOCK.value, StockStatus.UNKNOWN.value}


class ChangeKind(str, Enum):
    PRICE = "price"
    RESTOCK = "restock"
    STOCK = "stock"


@dataclass(frozen=True)
class ChangeEvent:
    """A variant's price or stock status changed."""

    variant_id: int
    kind: ChangeKind
    old_value: Union[Decimal, str, None]
    new_value: Union[Decimal, str, None]
    product_id: Optional[int] = None
    currency: Optional[str] = None
    detected_at: datetime = field(default_factory=utcnow)


def _price_key(price: Optional[Decimal], currency: Optional[str]) -> tuple:
    return (price.quantize(CENT) if price is not None else None, (currency or "").upper() or None)


class ChangeDetector:
    """
    Records transitions only.

    A history row is appended when the observed value differs from the latest
    row for the variant (the first observation always inserts). Events are
    emitted for transitions, not for first observations.
    """

    async def latest_price(self, session: AsyncSession, variant_id: int) -> Optional[PriceHistory]:
        result = await session.execute(
            select(PriceHistory)
            .where(PriceHistory.variant_id == variant_id)
            .order_by(PriceHistory.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_stock(self, session: AsyncSession, variant_id: int) -> Optional[StockHistory]:
        result = await session.execute(
            select(StockHistory)
            .where(StockHistory.variant_id == variant_id)
            .order_by(StockHistory.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def record(
        self,
        session: AsyncSession,
        variant_id: int,
        new_price: Optional[Decimal],
        new_currency: Optional[str],
        new_stock_status: Optional[StockStatus],
        product_id: Optional[int] = None,
    ) -> List[ChangeEvent]:
        """
        Compare an observation with the latest history and append on change.

        A missing price is not an observation and records nothing. Rows are
        added to the session; the caller owns the transaction.

        Returns:
            Change events (price first, then restock or stock)
        """
        events: List[ChangeEvent] = []
        now = utcnow()

        if new_price is not None:
            currency = new_currency.upper() if new_currency else None
            last_price = await self.latest_price(session, variant_id)
            if last_price is None or _price_key(last_price.price, last_price.currency) != _price_key(
                new_price, currency
            ):
                session.add(
                    PriceHistory(
                        variant_id=variant_id,
                        price=new_price.quantize(CENT),
                        currency=currency,
                        recorded_at=now,
                    )
                )
                if last_price is not None:
                    events.append(
                        ChangeEvent(
                            variant_id=variant_id,
                            kind=ChangeKind.PRICE,
                            old_value=last_price.price,
                            new_value=new_price.quantize(CENT),
                            product_id=product_id,
                            currency=currency,
                            detected_at=now,
                        )
                    )

        status = (new_stock_status or StockStatus.UNKNOWN).value
        last_stock = await self.latest_stock(session, variant_id)
        if last_stock is None or last_stock.status != status:
            session.add(StockHistory(variant_id=variant_id, status=status, recorded_at=now))
            if last_stock is not None:
                restock = status == StockStatus.IN_STOCK.value and last_stock.status in RESTOCK_FROM
                events.append(
                    ChangeEvent(
                        variant_id=variant_id,
                        kind=ChangeKind.RESTOCK if restock else ChangeKind.STOCK,
                        old_value=last_stock.status,
                        new_value=status,
                        product_id=product_id,
                        detected_at=now,
                    )
                )

        if events:
            logger.info(
                f"Variant {variant_id}: "
                + ", ".join(f"{e.kind.value} {e.old_value} -> {e.new_value}" for e in events)
            )
        return events
