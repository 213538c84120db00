"""
Order Service — コマンドハンドラ (CQRS の Write 側)

注文レコードを変更する操作はすべてここを通る。
各コマンドは状態を更新し、イベントストアに追記し、commit 後に
Redis Pub/Sub で通知する。

決済ステータスの遷移は「読んでから書く」ではなく条件付き UPDATE で行う:

    UPDATE orders SET payment_status = 'completed', ...
    WHERE id = :id AND payment_status IN ('pending', 'processing')

更新行が 1 なら自分が遷移させた。0 なら既に他のリクエストが遷移させている。
同じ注文に Webhook と verify が同時に届いても、遷移するのは 1 回だけ。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

import redis.asyncio as aioredis
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from .. import event_store
from ..catalog.commands import decrement_stock
from ..catalog.models import VariantKey
from ..errors import (
    InvalidFulfillmentTransitionError,
    InvalidRefundStateError,
    OrderNotFoundError,
    StockAdjustError,
)
from ..events import (
    FulfillmentUpdated,
    OrderCreated,
    PaymentCompleted,
    PaymentFailed,
    PaymentInitiated,
    RefundRequested,
    StockAdjusted,
    StockDecremented,
)
from ..payments.base import PaymentSession
from ..tables import order_items, orders, reconciliation_issues
from . import queries
from .models import (
    OPEN_PAYMENT_STATUSES,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Provider,
    RefundStatus,
    ShippingAddress,
    StockAdjustment,
    TrackingInfo,
    order_totals,
)

logger = logging.getLogger(__name__)

ORDER_CHANNEL = "order_events"
CATALOG_CHANNEL = "catalog_events"


@dataclass
class StockAdjustmentResult:
    order_id: UUID
    status: StockAdjustment
    adjusted: list[dict] = field(default_factory=list)
    backordered: list[dict] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    contact_email: str,
    items: list[OrderItem],
    shipping_address: ShippingAddress,
    provider: Provider,
    currency: str,
    notes: str | None = None,
    is_gift: bool = False,
    gift_message: str | None = None,
) -> Order:
    """
    注文作成コマンド（決済待ち）

    1. orders / order_items に保存 (total_amount は明細から再計算)
    2. OrderCreated イベントを追記
    3. commit してから Redis に通知
    """
    now = _now()
    total_amount = order_totals(items)

    await session.execute(
        orders.insert().values(
            id=order_id,
            contact_email=contact_email,
            shipping_address=shipping_address.model_dump(),
            total_amount=total_amount,
            currency=currency,
            payment_provider=provider.value,
            payment_status=PaymentStatus.PENDING.value,
            order_status=OrderStatus.PENDING.value,
            refund_status=RefundStatus.NONE.value,
            stock_adjustment=StockAdjustment.NOT_REQUIRED.value,
            notes=notes,
            is_gift=is_gift,
            gift_message=gift_message,
            created_at=now,
            updated_at=now,
        )
    )
    await session.execute(
        order_items.insert(),
        [
            {
                "order_id": order_id,
                "position": position,
                "bag_id": item.bag_id,
                "bag_name": item.bag_name,
                "size": item.size,
                "color": item.color,
                "price": item.price,
                "sku": item.sku,
                "quantity": item.quantity,
                "subtotal": item.subtotal,
            }
            for position, item in enumerate(items)
        ],
    )

    event = OrderCreated(
        order_id=order_id,
        contact_email=contact_email,
        provider=provider.value,
        items=[item.model_dump(mode="json") for item in items],
        total_amount=total_amount,
        currency=currency,
        timestamp=now,
    )
    event_data = event.model_dump(mode="json")
    await event_store.append_event(session, order_id, "Order", "OrderCreated", event_data, 0)
    await session.commit()

    await event_store.publish(redis, ORDER_CHANNEL, "OrderCreated", event_data)
    return await queries.get_order(session, order_id)


async def attach_payment_reference(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    provider: Provider,
    payment_session: PaymentSession,
) -> None:
    """プロバイダが発行したセッション ID / リファレンスを注文に記録する。"""
    now = _now()
    await session.execute(
        update(orders)
        .where(orders.c.id == order_id)
        .values(
            payment_id=payment_session.payment_id,
            payment_reference=payment_session.reference,
            updated_at=now,
        )
    )
    event = PaymentInitiated(
        order_id=order_id,
        provider=provider.value,
        payment_id=payment_session.payment_id,
        reference=payment_session.reference,
        timestamp=now,
    )
    event_data = event.model_dump(mode="json")
    await event_store.append_event(session, order_id, "Order", "PaymentInitiated", event_data)
    await session.commit()

    await event_store.publish(redis, ORDER_CHANNEL, "PaymentInitiated", event_data)


async def complete_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    provider: Provider,
    metadata: dict[str, Any],
    amount_paid: Decimal | None,
    source: str,
) -> bool:
    """
    決済完了コマンド

    pending / processing の注文だけを completed にし、
    同じ UPDATE で在庫引き落としマーカーを pending にする。

    Returns:
        True: この呼び出しで遷移した
        False: 遷移しなかった (既に完了済み / 失敗済み / 存在しない)
    """
    now = _now()
    result = await session.execute(
        update(orders)
        .where(
            orders.c.id == order_id,
            orders.c.payment_status.in_([s.value for s in OPEN_PAYMENT_STATUSES]),
        )
        .values(
            payment_status=PaymentStatus.COMPLETED.value,
            payment_date=now,
            payment_metadata=metadata,
            amount_paid=amount_paid,
            stock_adjustment=StockAdjustment.PENDING.value,
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        await session.rollback()
        return False

    event = PaymentCompleted(
        order_id=order_id,
        provider=provider.value,
        amount_paid=amount_paid,
        source=source,
        timestamp=now,
    )
    event_data = event.model_dump(mode="json")
    await event_store.append_event(session, order_id, "Order", "PaymentCompleted", event_data)
    await session.commit()

    await event_store.publish(redis, ORDER_CHANNEL, "PaymentCompleted", event_data)
    return True


async def fail_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    provider: Provider,
    reason: str,
    metadata: dict[str, Any],
) -> bool:
    """決済失敗コマンド。pending / processing の注文だけを failed にする。"""
    now = _now()
    result = await session.execute(
        update(orders)
        .where(
            orders.c.id == order_id,
            orders.c.payment_status.in_([s.value for s in OPEN_PAYMENT_STATUSES]),
        )
        .values(
            payment_status=PaymentStatus.FAILED.value,
            payment_metadata=metadata,
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        await session.rollback()
        return False

    event = PaymentFailed(
        order_id=order_id,
        provider=provider.value,
        reason=reason,
        timestamp=now,
    )
    event_data = event.model_dump(mode="json")
    await event_store.append_event(session, order_id, "Order", "PaymentFailed", event_data)
    await session.commit()

    await event_store.publish(redis, ORDER_CHANNEL, "PaymentFailed", event_data)
    return True


async def apply_stock_adjustment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
) -> StockAdjustmentResult | None:
    """
    在庫引き落としコマンド（決済完了後）

    マーカーを pending から取り上げる UPDATE と、全明細の在庫減算を
    1 つのトランザクションで行う。途中で例外が出れば全体がロールバックされ、
    マーカーは pending のまま残るので、後から安全に再実行できる。

    在庫不足の明細は減算せず backordered として記録する。
    決済は既に完了しているので取り消さない。

    Returns:
        None: マーカーが pending ではなかった (実行済み / 決済未完了)
    """
    now = _now()
    claimed = await session.execute(
        update(orders)
        .where(
            orders.c.id == order_id,
            orders.c.stock_adjustment == StockAdjustment.PENDING.value,
        )
        .values(stock_adjustment=StockAdjustment.COMPLETED.value, updated_at=now)
    )
    if claimed.rowcount != 1:
        await session.rollback()
        return None

    result = StockAdjustmentResult(order_id=order_id, status=StockAdjustment.COMPLETED)
    for item in await queries.load_items(session, order_id):
        line = {
            "bag_id": str(item.bag_id),
            "sku": item.sku,
            "size": item.size,
            "color": item.color,
            "quantity": item.quantity,
        }
        try:
            variant = await decrement_stock(
                session, item.bag_id, VariantKey(item.size, item.color), item.quantity
            )
        except StockAdjustError as e:
            logger.error("[Order: %s] Backorder: %s", order_id, e)
            result.backordered.append(line)
            continue
        result.adjusted.append({**line, "remaining": variant.stock})

    if result.backordered:
        result.status = StockAdjustment.BACKORDERED
        await session.execute(
            update(orders)
            .where(orders.c.id == order_id)
            .values(stock_adjustment=StockAdjustment.BACKORDERED.value)
        )

    event = StockAdjusted(
        order_id=order_id,
        result=result.status.value,
        backordered=result.backordered,
        timestamp=now,
    )
    event_data = event.model_dump(mode="json")
    await event_store.append_event(session, order_id, "Order", "StockAdjusted", event_data)
    await session.commit()

    for line in result.adjusted:
        decremented = StockDecremented(**line, order_id=order_id, timestamp=now)
        await event_store.publish(
            redis, CATALOG_CHANNEL, "StockDecremented", decremented.model_dump(mode="json")
        )
    await event_store.publish(redis, ORDER_CHANNEL, "StockAdjusted", event_data)
    return result


async def request_refund(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    reason: str,
) -> Order:
    """
    返金申請コマンド

    決済完了済みかつ返金未申請の注文だけを受け付ける。
    プロバイダへの返金 API 呼び出しや在庫の戻しは行わない (管理者の後続作業)。
    """
    order = await queries.get_order(session, order_id)
    if order is None:
        raise OrderNotFoundError(f"Order not found: {order_id}")

    now = _now()
    result = await session.execute(
        update(orders)
        .where(
            orders.c.id == order_id,
            orders.c.payment_status == PaymentStatus.COMPLETED.value,
            orders.c.refund_status == RefundStatus.NONE.value,
        )
        .values(
            refund_status=RefundStatus.REQUESTED.value,
            refund_reason=reason,
            refund_amount=orders.c.total_amount,
            refund_date=now,
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        await session.rollback()
        if order.payment_info.status != PaymentStatus.COMPLETED:
            raise InvalidRefundStateError("Cannot request refund for incomplete payment")
        raise InvalidRefundStateError("Refund already requested")

    event = RefundRequested(
        order_id=order_id,
        reason=reason,
        amount=order.total_amount,
        timestamp=now,
    )
    event_data = event.model_dump(mode="json")
    await event_store.append_event(session, order_id, "Order", "RefundRequested", event_data)
    await session.commit()

    await event_store.publish(redis, ORDER_CHANNEL, "RefundRequested", event_data)
    return await queries.get_order(session, order_id)


# 配送ステータスの並び順。後戻りは認めない。
_FULFILLMENT_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PROCESSING: 1,
    OrderStatus.SHIPPED: 2,
    OrderStatus.DELIVERED: 3,
}
_TERMINAL_FULFILLMENT = (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


def check_fulfillment_transition(order: Order, target: OrderStatus) -> None:
    """
    配送ステータスと決済ステータスの組み合わせを検証する。

    - delivered / cancelled からは動かせない
    - processing / shipped / delivered は決済完了済みの注文だけ
    - shipped 以降はキャンセル不可
    - 後戻り不可
    """
    current = order.order_status
    if current in _TERMINAL_FULFILLMENT:
        raise InvalidFulfillmentTransitionError(
            f"Order is already {current.value}"
        )
    if target == OrderStatus.CANCELLED:
        if current == OrderStatus.SHIPPED:
            raise InvalidFulfillmentTransitionError("Cannot cancel a shipped order")
        return
    if order.payment_info.status != PaymentStatus.COMPLETED:
        raise InvalidFulfillmentTransitionError(
            f"Cannot move order to {target.value} before payment is completed"
        )
    if _FULFILLMENT_RANK[target] <= _FULFILLMENT_RANK[current]:
        raise InvalidFulfillmentTransitionError(
            f"Cannot move order from {current.value} to {target.value}"
        )


async def update_fulfillment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: UUID,
    target: OrderStatus,
    tracking: TrackingInfo | None = None,
) -> Order:
    """配送ステータス更新コマンド。delivered にすると配達日時を記録する。"""
    order = await queries.get_order(session, order_id)
    if order is None:
        raise OrderNotFoundError(f"Order not found: {order_id}")
    check_fulfillment_transition(order, target)

    now = _now()
    values: dict[str, Any] = {"order_status": target.value, "updated_at": now}
    if tracking is not None:
        values.update(
            tracking_carrier=tracking.carrier,
            tracking_number=tracking.tracking_number,
            tracking_url=tracking.tracking_url,
            estimated_delivery=tracking.estimated_delivery,
        )
    if target == OrderStatus.DELIVERED:
        values["delivered_at"] = now

    # 読み取り後に他のリクエストが先に更新していたら失敗させる
    result = await session.execute(
        update(orders)
        .where(
            orders.c.id == order_id,
            orders.c.order_status == order.order_status.value,
        )
        .values(**values)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise InvalidFulfillmentTransitionError(
            f"Order {order_id} was updated concurrently, retry"
        )

    event = FulfillmentUpdated(
        order_id=order_id,
        previous_status=order.order_status.value,
        order_status=target.value,
        tracking_number=tracking.tracking_number if tracking else None,
        timestamp=now,
    )
    event_data = event.model_dump(mode="json")
    await event_store.append_event(session, order_id, "Order", "FulfillmentUpdated", event_data)
    await session.commit()

    await event_store.publish(redis, ORDER_CHANNEL, "FulfillmentUpdated", event_data)
    return await queries.get_order(session, order_id)


async def record_issue(
    session: AsyncSession,
    kind: str,
    detail: dict[str, Any],
    provider: Provider | None = None,
    reference: str | None = None,
    order_id: UUID | None = None,
) -> None:
    """手動確認が必要な不整合 (不明なリファレンス、在庫不足など) を記録する。"""
    await session.execute(
        reconciliation_issues.insert().values(
            kind=kind,
            provider=provider.value if provider else None,
            reference=reference,
            order_id=order_id,
            detail=detail,
            created_at=_now(),
        )
    )
    await session.commit()
