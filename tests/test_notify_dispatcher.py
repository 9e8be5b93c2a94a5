"""Tests for matching change events against trackers."""

from decimal import Decimal

import pytest

from pricewatch.db.models import TrackedItem
from pricewatch.detect.change_detector import ChangeEvent, ChangeKind
from pricewatch.notify.dispatcher import NotificationDispatcher, price_change_percent

from tests.factories import create_product, create_variant


def price_event(variant_id, product_id, old, new):
    return ChangeEvent(
        variant_id=variant_id,
        kind=ChangeKind.PRICE,
        old_value=Decimal(old),
        new_value=Decimal(new),
        product_id=product_id,
        currency="USD",
    )


def test_price_change_percent():
    assert price_change_percent(Decimal("100"), Decimal("80")) == Decimal("-20.00")
    assert price_change_percent(Decimal("0"), Decimal("5")) is None


@pytest.mark.asyncio
async def test_plan_filters_by_threshold_and_variant(db_session):
    product = await create_product(db_session, tracked=False)
    small = await create_variant(db_session, product.id, {"size": "S"})
    large = await create_variant(db_session, product.id, {"size": "L"})
    db_session.add_all(
        [
            TrackedItem(user_id=1, product_id=product.id, price_threshold_percent=Decimal("10")),
            TrackedItem(user_id=2, product_id=product.id, price_threshold_percent=Decimal("30")),
            TrackedItem(user_id=3, product_id=product.id, variant_id=large.id),
            TrackedItem(user_id=4, product_id=product.id, active=False),
        ]
    )
    await db_session.commit()

    dispatcher = NotificationDispatcher()
    intents = await dispatcher.plan(db_session, [price_event(small.id, product.id, "100.00", "80.00")])

    assert [i.user_id for i in intents] == [1]
    assert intents[0].change_percent == Decimal("-20.00")


@pytest.mark.asyncio
async def test_plan_restock_and_stock_events(db_session):
    product = await create_product(db_session, tracked=False)
    variant = await create_variant(db_session, product.id)
    db_session.add_all(
        [
            TrackedItem(user_id=1, product_id=product.id, notify_restock=True),
            TrackedItem(user_id=2, product_id=product.id, notify_restock=False),
        ]
    )
    await db_session.commit()

    events = [
        ChangeEvent(variant.id, ChangeKind.RESTOCK, "out_of_stock", "in_stock", product_id=product.id),
        ChangeEvent(variant.id, ChangeKind.STOCK, "in_stock", "out_of_stock", product_id=product.id),
    ]
    intents = await NotificationDispatcher().plan(db_session, events)

    assert [(i.user_id, i.event.kind) for i in intents] == [(1, ChangeKind.RESTOCK)]


@pytest.mark.asyncio
async def test_handle_delivers_intents(session_factory, db_session):
    product = await create_product(db_session)
    variant = await create_variant(db_session, product.id)
    delivered = []

    async def deliver(intents):
        delivered.extend(intents)

    dispatcher = NotificationDispatcher(session_factory=session_factory, deliver=deliver)
    await dispatcher.handle([price_event(variant.id, product.id, "10.00", "9.00")])

    assert len(delivered) == 1
    assert delivered[0].user_id == 1
