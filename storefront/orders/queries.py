"""
Order Service — クエリハンドラ (CQRS の Read 側)

orders / order_items テーブルから注文レコードを組み立てる。
"""

from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..tables import order_items, orders, reconciliation_issues
from .models import (
    Order,
    OrderItem,
    PaymentInfo,
    Provider,
    RefundInfo,
    ShippingAddress,
    StockAdjustment,
    TrackingInfo,
)


def _order_from_rows(row, item_rows) -> Order:
    return Order(
        id=row.id,
        contact_email=row.contact_email,
        items=[
            OrderItem(
                bag_id=i.bag_id,
                bag_name=i.bag_name,
                size=i.size,
                color=i.color,
                price=i.price,
                sku=i.sku,
                quantity=i.quantity,
            )
            for i in item_rows
        ],
        shipping_address=ShippingAddress(**row.shipping_address),
        payment_info=PaymentInfo(
            provider=row.payment_provider,
            payment_id=row.payment_id,
            reference=row.payment_reference,
            status=row.payment_status,
            amount_paid=row.amount_paid,
            currency=row.currency,
            payment_date=row.payment_date,
            metadata=row.payment_metadata,
        ),
        order_status=row.order_status,
        refund_info=RefundInfo(
            status=row.refund_status,
            reason=row.refund_reason,
            amount=row.refund_amount,
            date=row.refund_date,
        ),
        tracking_info=TrackingInfo(
            carrier=row.tracking_carrier,
            tracking_number=row.tracking_number,
            tracking_url=row.tracking_url,
            estimated_delivery=row.estimated_delivery,
            delivered_at=row.delivered_at,
        ),
        stock_adjustment=row.stock_adjustment,
        notes=row.notes,
        is_gift=row.is_gift,
        gift_message=row.gift_message,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


async def load_items(session: AsyncSession, order_id: UUID) -> list:
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id == order_id)
        .order_by(order_items.c.position)
    )
    return result.fetchall()


async def get_order(session: AsyncSession, order_id: UUID) -> Order | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    return _order_from_rows(row, await load_items(session, order_id))


async def find_order_by_reference(
    session: AsyncSession,
    provider: Provider,
    reference: str,
) -> Order | None:
    """外部 ID (Stripe のセッション ID / Paystack のリファレンス) から注文を探す。"""
    result = await session.execute(
        select(orders).where(
            orders.c.payment_provider == provider.value,
            or_(
                orders.c.payment_id == reference,
                orders.c.payment_reference == reference,
            ),
        )
    )
    row = result.fetchone()
    if not row:
        return None
    return _order_from_rows(row, await load_items(session, row.id))


async def list_orders(
    session: AsyncSession,
    contact_email: str | None = None,
) -> list[Order]:
    query = select(orders).order_by(orders.c.created_at.desc())
    if contact_email:
        query = query.where(orders.c.contact_email == contact_email)
    rows = (await session.execute(query)).fetchall()
    return [_order_from_rows(row, await load_items(session, row.id)) for row in rows]


async def list_pending_stock_adjustments(session: AsyncSession) -> list[UUID]:
    """決済完了済みで在庫引き落としが未確定の注文 ID"""
    result = await session.execute(
        select(orders.c.id)
        .where(orders.c.stock_adjustment == StockAdjustment.PENDING.value)
        .order_by(orders.c.payment_date)
    )
    return list(result.scalars().all())


async def order_stats(session: AsyncSession, contact_email: str | None = None) -> list[dict]:
    """配送ステータスごとの件数と金額 (contact_email 指定時はその顧客のみ)"""
    query = select(
        orders.c.order_status,
        func.count().label("count"),
        func.coalesce(func.sum(orders.c.total_amount), 0).label("total_amount"),
    )
    if contact_email:
        query = query.where(orders.c.contact_email == contact_email)
    result = await session.execute(
        query.group_by(orders.c.order_status).order_by(orders.c.order_status)
    )
    return [
        {
            "order_status": row.order_status,
            "count": row.count,
            "total_amount": float(row.total_amount),
        }
        for row in result.fetchall()
    ]


async def list_issues(session: AsyncSession, kind: str | None = None) -> list[dict]:
    query = select(reconciliation_issues).order_by(reconciliation_issues.c.id.desc())
    if kind:
        query = query.where(reconciliation_issues.c.kind == kind)
    result = await session.execute(query)
    return [
        {
            "id": row.id,
            "kind": row.kind,
            "provider": row.provider,
            "reference": row.reference,
            "order_id": str(row.order_id) if row.order_id else None,
            "detail": row.detail,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]
