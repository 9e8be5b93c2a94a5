"""Match change events against trackers to decide who should hear about them.

Delivery belongs to a downstream service; this module only produces
``NotificationIntent`` records.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.db.models import TrackedItem
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.detect.change_detector import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class NotificationIntent:
    user_id: int
    tracked_item_id: int
    event: ChangeEvent
    change_percent: Optional[Decimal] = None


def price_change_percent(old: Decimal, new: Decimal) -> Optional[Decimal]:
    """Signed percentage change, None when the old price is zero."""
    if old is None or new is None or old == 0:
        return None
    return ((new - old) / old * HUNDRED).quantize(Decimal("0.01"))


class NotificationDispatcher:
    """Filter change events through the tracking registry."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        deliver: Optional[Callable[[List[NotificationIntent]], Awaitable[None]]] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.deliver = deliver

    async def _trackers(self, session: AsyncSession, product_ids: List[int]) -> Dict[int, List[TrackedItem]]:
        rows = (
            await session.execute(
                select(TrackedItem)
                .where(TrackedItem.product_id.in_(product_ids), TrackedItem.active.is_(True))
                .order_by(TrackedItem.id)
            )
        ).scalars()
        by_product: Dict[int, List[TrackedItem]] = {}
        for item in rows:
            by_product.setdefault(item.product_id, []).append(item)
        return by_product

    async def plan(self, session: AsyncSession, events: List[ChangeEvent]) -> List[NotificationIntent]:
        """
        Build intents for events that pass each tracker's preferences.

        - price: absolute change percent >= tracker threshold
        - restock: tracker has notify_restock set
        - stock: never notified
        """
        product_ids = sorted({e.product_id for e in events if e.product_id is not None})
        if not product_ids:
            return []
        trackers = await self._trackers(session, product_ids)

        intents: List[NotificationIntent] = []
        for event in events:
            if event.kind == ChangeKind.STOCK:
                continue
            percent = None
            if event.kind == ChangeKind.PRICE:
                percent = price_change_percent(event.old_value, event.new_value)
                if percent is None:
                    continue

            for item in trackers.get(event.product_id, []):
                if item.variant_id is not None and item.variant_id != event.variant_id:
                    continue
                if event.kind == ChangeKind.RESTOCK and not item.notify_restock:
                    continue
                if percent is not None and abs(percent) < (item.price_threshold_percent or 0):
                    continue
                intents.append(
                    NotificationIntent(
                        user_id=item.user_id,
                        tracked_item_id=item.id,
                        event=event,
                        change_percent=percent,
                    )
                )
        return intents

    async def handle(self, events: List[ChangeEvent]):
        """Event handler for the check worker."""
        async with self.session_factory() as session:
            intents = await self.plan(session, events)

        for intent in intents:
            event = intent.event
            logger.info(
                f"Notify user {intent.user_id} (tracker {intent.tracked_item_id}): "
                f"variant {event.variant_id} {event.kind.value} {event.old_value} -> {event.new_value}"
            )
        if intents and self.deliver is not None:
            await self.deliver(intents)
