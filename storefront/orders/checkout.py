"""
Order Service — チェックアウト

カートの内容から決済待ちの注文を作り、決済プロバイダへ引き渡す。

  ┌──────────────────────────────────────────────────────┐
  │  1. カタログで各明細のバリアントと在庫を確認            │
  │     └─ 不足 → InsufficientStockError (注文は作らない)  │
  │  2. サーバ側の価格で合計金額を計算                      │
  │  3. 注文を pending で保存 (外部呼び出しより先に commit)│
  │  4. プロバイダで決済を開始し、外部 ID を注文に記録      │
  │     └─ 失敗 → 注文は pending のまま (再試行 / 放置可)   │
  └──────────────────────────────────────────────────────┘

1 の在庫確認は参考値。同時に走るチェックアウト同士では売り越しが起こりうるので、
最終的な判定は決済完了後の条件付き減算 (catalog.commands.decrement_stock) が行う。
"""

import logging
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy.orm import sessionmaker

from ..catalog import queries as catalog_queries
from ..errors import (
    InsufficientStockError,
    PaymentInitiationError,
    UnknownVariantError,
    ValidationError,
)
from ..payments.base import PaymentGateway
from ..payments.registry import get_gateway
from . import commands
from .models import (
    CartItem,
    CheckoutResult,
    OrderItem,
    Provider,
    ShippingAddress,
    order_totals,
)

logger = logging.getLogger(__name__)


class CheckoutInitiator:
    def __init__(
        self,
        session_factory: sessionmaker,
        redis: aioredis.Redis | None,
        gateways: dict[Provider, PaymentGateway],
        currency: str = "USD",
    ) -> None:
        self.session_factory = session_factory
        self.redis = redis
        self.gateways = gateways
        self.currency = currency

    async def initiate_checkout(
        self,
        cart_items: list[CartItem],
        shipping_address: ShippingAddress,
        provider: Provider,
        contact_email: str,
        notes: str | None = None,
        is_gift: bool = False,
        gift_message: str | None = None,
    ) -> CheckoutResult:
        if not cart_items:
            raise ValidationError("Cart is empty")
        gateway = get_gateway(self.gateways, provider)
        order_id = uuid4()
        log_prefix = f"[Order: {order_id}]"

        async with self.session_factory() as session:
            items = await self._price_cart(session, cart_items)
            total_amount = order_totals(items)

            await commands.create_order(
                session,
                self.redis,
                order_id,
                contact_email,
                items,
                shipping_address,
                provider,
                self.currency,
                notes=notes,
                is_gift=is_gift,
                gift_message=gift_message,
            )
        logger.info(
            "%s Pending order created (%s %s via %s)",
            log_prefix, total_amount, self.currency, provider.value,
        )

        try:
            payment_session = await gateway.initiate(
                total_amount,
                self.currency,
                str(order_id),
                {"contact_email": contact_email},
                customer_email=contact_email,
            )
        except PaymentInitiationError:
            logger.warning("%s Payment initiation failed, order left pending", log_prefix)
            raise

        async with self.session_factory() as session:
            await commands.attach_payment_reference(
                session, self.redis, order_id, provider, payment_session
            )
        logger.info(
            "%s Payment initiated (ref=%s)", log_prefix, payment_session.external_reference
        )

        return CheckoutResult(
            order_id=order_id,
            redirect_url=payment_session.redirect_url,
            provider=provider,
            external_reference=payment_session.external_reference,
            total_amount=total_amount,
            currency=self.currency,
        )

    async def _price_cart(self, session, cart_items: list[CartItem]) -> list[OrderItem]:
        """
        カートの各行をカタログと突き合わせ、サーバ側の価格で明細を作る。

        同じバリアントが複数行にある場合は合計数量で在庫を確認する。
        """
        requested: dict[tuple, int] = {}
        for item in cart_items:
            key = (item.bag_id, item.size, item.color)
            requested[key] = requested.get(key, 0) + item.quantity

        items: list[OrderItem] = []
        for item in cart_items:
            bag = await catalog_queries.get_bag(session, item.bag_id)
            variant = await catalog_queries.get_variant(
                session, item.bag_id, item.size, item.color
            )
            if bag is None or variant is None:
                raise UnknownVariantError(
                    f"No variant {item.color} {item.size} for bag {item.bag_id}"
                )

            wanted = requested[(item.bag_id, item.size, item.color)]
            if variant.stock < wanted:
                logger.info(
                    "Checkout rejected: %s %s %s requested=%d available=%d",
                    bag.name, variant.color, variant.size, wanted, variant.stock,
                )
                raise InsufficientStockError(
                    bag.name, variant.color, variant.size, wanted, variant.stock
                )

            items.append(
                OrderItem(
                    bag_id=bag.id,
                    bag_name=bag.name,
                    size=variant.size,
                    color=variant.color,
                    price=variant.price,
                    sku=variant.sku,
                    quantity=item.quantity,
                )
            )
        return items
