"""Tests for history recording and change events."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from pricewatch.db.models import PriceHistory, StockHistory, StockStatus
from pricewatch.detect.change_detector import ChangeDetector, ChangeKind

from tests.factories import create_product, create_variant


async def count(session, model, variant_id):
    return await session.scalar(select(func.count()).select_from(model).where(model.variant_id == variant_id))


@pytest.fixture
def detector():
    return ChangeDetector()


@pytest.mark.asyncio
async def test_first_observation_inserts_without_events(db_session, detector):
    product = await create_product(db_session)
    variant = await create_variant(db_session, product.id)

    events = await detector.record(db_session, variant.id, Decimal("29.99"), "usd", StockStatus.IN_STOCK)
    await db_session.commit()

    assert events == []
    assert await count(db_session, PriceHistory, variant.id) == 1
    assert await count(db_session, StockHistory, variant.id) == 1
    latest = await detector.latest_price(db_session, variant.id)
    assert latest.currency == "USD"


@pytest.mark.asyncio
async def test_same_observation_twice_is_idempotent(db_session, detector):
    product = await create_product(db_session)
    variant = await create_variant(db_session, product.id)

    for _ in range(2):
        events = await detector.record(db_session, variant.id, Decimal("29.99"), "USD", StockStatus.IN_STOCK)
        await db_session.commit()

    assert events == []
    assert await count(db_session, PriceHistory, variant.id) == 1
    assert await count(db_session, StockHistory, variant.id) == 1


@pytest.mark.asyncio
async def test_currency_change_is_a_price_change(db_session, detector):
    product = await create_product(db_session)
    variant = await create_variant(db_session, product.id)

    await detector.record(db_session, variant.id, Decimal("10.00"), "USD", StockStatus.IN_STOCK)
    events = await detector.record(db_session, variant.id, Decimal("10.00"), "EUR", StockStatus.IN_STOCK)

    assert [e.kind for e in events] == [ChangeKind.PRICE]
    assert events[0].currency == "EUR"


@pytest.mark.asyncio
async def test_missing_price_records_nothing(db_session, detector):
    product = await create_product(db_session)
    variant = await create_variant(db_session, product.id)

    await detector.record(db_session, variant.id, Decimal("5.00"), "USD", StockStatus.IN_STOCK)
    events = await detector.record(db_session, variant.id, None, None, StockStatus.IN_STOCK)
    await db_session.commit()

    assert events == []
    assert await count(db_session, PriceHistory, variant.id) == 1


@pytest.mark.asyncio
async def test_price_and_restock_scenario(db_session, detector):
    product = await create_product(db_session)
    variant = await create_variant(db_session, product.id)

    await detector.record(db_session, variant.id, Decimal("29.99"), "USD", StockStatus.IN_STOCK)
    await db_session.commit()

    # Check 1: same price, now out of stock
    events = await detector.record(db_session, variant.id, Decimal("29.99"), "USD", StockStatus.OUT_OF_STOCK)
    await db_session.commit()
    assert [(e.kind, e.old_value, e.new_value) for e in events] == [
        (ChangeKind.STOCK, "in_stock", "out_of_stock")
    ]
    assert await count(db_session, PriceHistory, variant.id) == 1
    assert await count(db_session, StockHistory, variant.id) == 2

    # Check 2: price drop and back in stock
    events = await detector.record(
        db_session, variant.id, Decimal("24.99"), "USD", StockStatus.IN_STOCK, product_id=product.id
    )
    await db_session.commit()
    assert [e.kind for e in events] == [ChangeKind.PRICE, ChangeKind.RESTOCK]
    assert events[0].old_value == Decimal("29.99")
    assert events[0].new_value == Decimal("24.99")
    assert events[0].product_id == product.id
    assert await count(db_session, PriceHistory, variant.id) == 2
    assert await count(db_session, StockHistory, variant.id) == 3


@pytest.mark.asyncio
async def test_unknown_to_in_stock_is_restock(db_session, detector):
    product = await create_product(db_session)
    variant = await create_variant(db_session, product.id)

    await detector.record(db_session, variant.id, None, None, StockStatus.UNKNOWN)
    events = await detector.record(db_session, variant.id, None, None, StockStatus.IN_STOCK)
    assert [e.kind for e in events] == [ChangeKind.RESTOCK]

    events = await detector.record(db_session, variant.id, None, None, StockStatus.UNKNOWN)
    assert [e.kind for e in events] == [ChangeKind.STOCK]
