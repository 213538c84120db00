"""チェックアウト: 在庫確認、サーバ側価格での合計、決済開始前の注文保存"""

from decimal import Decimal
from uuid import uuid4

import pytest
from conftest import ADDRESS, cart, variant_stock

from storefront import event_store
from storefront.errors import (
    InsufficientStockError,
    PaymentInitiationError,
    UnknownProviderError,
    UnknownVariantError,
    ValidationError,
)
from storefront.orders import queries
from storefront.orders.models import CartItem, PaymentStatus, Provider


async def test_checkout_creates_pending_order_without_touching_stock(
    checkout, session_factory, bag, gateway
):
    result = await checkout.initiate_checkout(
        cart(bag, quantity=2), ADDRESS, Provider.STRIPE, "buyer@example.com"
    )

    assert result.total_amount == Decimal("100.00")
    assert result.redirect_url == f"https://pay.example.test/{result.order_id}"
    assert result.external_reference == f"cs_test_{result.order_id}"
    assert gateway.initiated[0]["amount"] == Decimal("100.00")
    assert gateway.initiated[0]["correlation_id"] == str(result.order_id)

    async with session_factory() as session:
        order = await queries.get_order(session, result.order_id)
    assert order.payment_info.status == PaymentStatus.PENDING
    assert order.payment_info.payment_id == result.external_reference
    assert order.total_amount == Decimal("100.00")
    assert order.items[0].sku == "TOTE-M-BLK"
    assert await variant_stock(session_factory, bag) == 5


async def test_checkout_uses_catalog_price(checkout, bag):
    items = [
        CartItem(bag_id=bag.id, size="Medium", color="Black", quantity=1),
        CartItem(bag_id=bag.id, size="Large", color="Tan", quantity=1),
    ]

    result = await checkout.initiate_checkout(items, ADDRESS, Provider.STRIPE, "a@example.com")

    assert result.total_amount == Decimal("130.00")


async def test_insufficient_stock_creates_no_order(checkout, session_factory, bag, gateway):
    with pytest.raises(InsufficientStockError) as exc_info:
        await checkout.initiate_checkout(
            cart(bag, quantity=10), ADDRESS, Provider.STRIPE, "buyer@example.com"
        )

    assert exc_info.value.requested == 10
    assert exc_info.value.available == 5
    assert "Classic Tote" in exc_info.value.message
    assert gateway.initiated == []
    async with session_factory() as session:
        assert await queries.list_orders(session) == []


async def test_repeated_variant_lines_are_checked_together(checkout, bag):
    items = [
        CartItem(bag_id=bag.id, size="Medium", color="Black", quantity=3),
        CartItem(bag_id=bag.id, size="Medium", color="Black", quantity=3),
    ]

    with pytest.raises(InsufficientStockError):
        await checkout.initiate_checkout(items, ADDRESS, Provider.STRIPE, "a@example.com")


async def test_unknown_variant_is_rejected(checkout, bag):
    with pytest.raises(UnknownVariantError):
        await checkout.initiate_checkout(
            cart(bag, color="Purple"), ADDRESS, Provider.STRIPE, "a@example.com"
        )

    with pytest.raises(UnknownVariantError):
        await checkout.initiate_checkout(
            [CartItem(bag_id=uuid4(), size="Medium", color="Black", quantity=1)],
            ADDRESS,
            Provider.STRIPE,
            "a@example.com",
        )


async def test_empty_cart_is_rejected(checkout, session_factory, gateway):
    with pytest.raises(ValidationError) as exc_info:
        await checkout.initiate_checkout([], ADDRESS, Provider.STRIPE, "a@example.com")

    assert exc_info.value.message == "Cart is empty"
    assert gateway.initiated == []
    async with session_factory() as session:
        assert await queries.list_orders(session) == []


async def test_unconfigured_provider_is_rejected(checkout, bag):
    with pytest.raises(UnknownProviderError):
        await checkout.initiate_checkout(cart(bag), ADDRESS, Provider.PAYSTACK, "a@example.com")


async def test_initiation_failure_leaves_order_pending_without_reference(
    checkout, session_factory, bag, gateway
):
    gateway.fail_initiate = True

    with pytest.raises(PaymentInitiationError):
        await checkout.initiate_checkout(cart(bag), ADDRESS, Provider.STRIPE, "a@example.com")

    async with session_factory() as session:
        orders = await queries.list_orders(session)
    assert len(orders) == 1
    assert orders[0].payment_info.status == PaymentStatus.PENDING
    assert orders[0].payment_info.payment_id is None
    assert orders[0].payment_info.reference is None


async def test_checkout_records_events(checkout, session_factory, bag):
    result = await checkout.initiate_checkout(
        cart(bag), ADDRESS, Provider.STRIPE, "a@example.com"
    )

    async with session_factory() as session:
        events = await event_store.load_events(session, result.order_id)
    assert [e["event_type"] for e in events] == ["OrderCreated", "PaymentInitiated"]
    assert [e["version"] for e in events] == [1, 2]
    assert Decimal(events[0]["event_data"]["total_amount"]) == Decimal("100")
