"""Row factories shared by the persistence tests."""

from decimal import Decimal

from pricewatch.db.models import Product, TrackedItem, Variant


async def create_product(session, url="https://shop.example.com/products/tee", tracked=True, **fields):
    product = Product(canonical_url=url, display_name=fields.pop("display_name", "Tee"), **fields)
    session.add(product)
    await session.flush()
    if tracked:
        session.add(TrackedItem(user_id=1, product_id=product.id, active=True))
    await session.commit()
    return product


async def create_variant(session, product_id, attributes=None, sku=None, price=None):
    variant = Variant(
        product_id=product_id,
        attributes=attributes or {},
        sku=sku,
        current_price=Decimal(price) if price is not None else None,
    )
    session.add(variant)
    await session.commit()
    return variant
