"""注文コマンド: 返金申請、配送ステータス、合計金額"""

from decimal import Decimal
from uuid import uuid4

import pytest
from conftest import ADDRESS, cart

from storefront.errors import (
    InvalidFulfillmentTransitionError,
    InvalidRefundStateError,
    OrderNotFoundError,
)
from storefront.orders import commands, queries
from storefront.orders.models import (
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Provider,
    RefundStatus,
    TrackingInfo,
    order_totals,
)


@pytest.fixture
async def pending_order(checkout, bag):
    return await checkout.initiate_checkout(
        cart(bag), ADDRESS, Provider.STRIPE, "buyer@example.com"
    )


@pytest.fixture
async def paid_order(pending_order, reconciler):
    await reconciler.complete_payment(pending_order.order_id, {"session_id": "cs_1"})
    return pending_order


# ── 返金申請 ─────────────────────────────────────


async def test_refund_on_unpaid_order_is_refused(session_factory, redis, pending_order):
    async with session_factory() as session:
        with pytest.raises(InvalidRefundStateError) as exc_info:
            await commands.request_refund(
                session, redis, pending_order.order_id, "changed my mind"
            )

        order = await queries.get_order(session, pending_order.order_id)
    assert "incomplete payment" in exc_info.value.message
    assert order.refund_info.status == RefundStatus.NONE


async def test_refund_on_paid_order_is_requested(session_factory, redis, paid_order):
    async with session_factory() as session:
        order = await commands.request_refund(
            session, redis, paid_order.order_id, "strap broke"
        )

    assert order.refund_info.status == RefundStatus.REQUESTED
    assert order.refund_info.reason == "strap broke"
    assert order.refund_info.amount == Decimal("100.00")
    assert order.refund_info.date is not None
    # 返金申請だけでは決済ステータスは変わらない
    assert order.payment_info.status == PaymentStatus.COMPLETED


async def test_second_refund_request_is_refused(session_factory, redis, paid_order):
    async with session_factory() as session:
        await commands.request_refund(session, redis, paid_order.order_id, "strap broke")
        with pytest.raises(InvalidRefundStateError) as exc_info:
            await commands.request_refund(session, redis, paid_order.order_id, "again")

    assert exc_info.value.message == "Refund already requested"


async def test_refund_unknown_order(session_factory, redis):
    async with session_factory() as session:
        with pytest.raises(OrderNotFoundError):
            await commands.request_refund(session, redis, uuid4(), "missing")


# ── 配送ステータス ───────────────────────────────


async def test_fulfillment_requires_completed_payment(session_factory, redis, pending_order):
    async with session_factory() as session:
        with pytest.raises(InvalidFulfillmentTransitionError):
            await commands.update_fulfillment(
                session, redis, pending_order.order_id, OrderStatus.SHIPPED
            )


async def test_fulfillment_moves_forward_and_stamps_delivery(
    session_factory, redis, paid_order
):
    tracking = TrackingInfo(carrier="DHL", tracking_number="DHL123")
    async with session_factory() as session:
        shipped = await commands.update_fulfillment(
            session, redis, paid_order.order_id, OrderStatus.SHIPPED, tracking
        )
        delivered = await commands.update_fulfillment(
            session, redis, paid_order.order_id, OrderStatus.DELIVERED
        )

    assert shipped.order_status == OrderStatus.SHIPPED
    assert shipped.tracking_info.tracking_number == "DHL123"
    assert delivered.order_status == OrderStatus.DELIVERED
    assert delivered.tracking_info.delivered_at is not None
    assert delivered.tracking_info.carrier == "DHL"


@pytest.mark.parametrize(
    "steps, target",
    [
        ([OrderStatus.SHIPPED], OrderStatus.PROCESSING),
        ([OrderStatus.SHIPPED], OrderStatus.CANCELLED),
        ([OrderStatus.DELIVERED], OrderStatus.CANCELLED),
        ([OrderStatus.CANCELLED], OrderStatus.PROCESSING),
    ],
)
async def test_fulfillment_guard(session_factory, redis, paid_order, steps, target):
    async with session_factory() as session:
        for step in steps:
            await commands.update_fulfillment(session, redis, paid_order.order_id, step)
        with pytest.raises(InvalidFulfillmentTransitionError):
            await commands.update_fulfillment(session, redis, paid_order.order_id, target)


async def test_unpaid_order_can_be_cancelled(session_factory, redis, pending_order):
    async with session_factory() as session:
        order = await commands.update_fulfillment(
            session, redis, pending_order.order_id, OrderStatus.CANCELLED
        )

    assert order.order_status == OrderStatus.CANCELLED
    assert order.payment_info.status == PaymentStatus.PENDING


# ── 合計金額 / 集計 ──────────────────────────────


def test_total_is_sum_of_subtotals():
    items = [
        OrderItem(
            bag_id=uuid4(), bag_name="Tote", size="Medium", color="Black",
            price=Decimal("49.99"), sku="T-1", quantity=3,
        ),
        OrderItem(
            bag_id=uuid4(), bag_name="Clutch", size="Small", color="Red",
            price=Decimal("15.50"), sku="C-1", quantity=1,
        ),
    ]

    assert items[0].subtotal == Decimal("149.97")
    assert order_totals(items) == Decimal("165.47")
    assert order_totals([]) == Decimal("0")


async def test_total_invariant_holds_through_mutations(
    session_factory, redis, paid_order
):
    async with session_factory() as session:
        await commands.request_refund(session, redis, paid_order.order_id, "scratched")
        await commands.update_fulfillment(
            session, redis, paid_order.order_id, OrderStatus.PROCESSING
        )
        order = await queries.get_order(session, paid_order.order_id)

    assert order.total_amount == sum(item.subtotal for item in order.items)
    assert order.total_amount == paid_order.total_amount


async def test_order_stats(session_factory, pending_order, checkout, bag):
    await checkout.initiate_checkout(cart(bag, quantity=1), ADDRESS, Provider.STRIPE, "b@example.com")

    async with session_factory() as session:
        stats = await queries.order_stats(session)

    assert stats == [{"order_status": "pending", "count": 2, "total_amount": 150.0}]


async def test_order_stats_for_one_customer(session_factory, pending_order, checkout, bag):
    await checkout.initiate_checkout(cart(bag, quantity=1), ADDRESS, Provider.STRIPE, "b@example.com")

    async with session_factory() as session:
        stats = await queries.order_stats(session, contact_email="b@example.com")
        nobody = await queries.order_stats(session, contact_email="c@example.com")

    assert stats == [{"order_status": "pending", "count": 1, "total_amount": 50.0}]
    assert nobody == []


async def test_find_order_by_reference(session_factory, pending_order):
    async with session_factory() as session:
        found = await queries.find_order_by_reference(
            session, Provider.STRIPE, pending_order.external_reference
        )
        other_provider = await queries.find_order_by_reference(
            session, Provider.PAYSTACK, pending_order.external_reference
        )

    assert found.id == pending_order.order_id
    assert other_provider is None
