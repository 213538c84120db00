"""
Catalog — コマンドハンドラ (CQRS Write 側)

在庫の引き落とし (Stock Adjuster) と商品登録を処理する。

在庫は複数の注文から同時に引き落とされるため、
「読んでから書く」のではなく 1 本の条件付き UPDATE で減算する:

    UPDATE bag_variants
    SET stock = stock - :qty
    WHERE bag_id = :bag AND size = :size AND color = :color AND stock >= :qty

更新行が 0 なら在庫不足 (またはバリアントが存在しない)。
在庫がマイナスになることはない。
"""

import logging
from datetime import datetime, timezone
from uuid import UUID, uuid4

import redis.asyncio as aioredis
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .. import event_store
from ..errors import StockAdjustError, ValidationError
from ..events import BagCreated
from ..tables import bag_variants, bags
from . import queries
from .models import Bag, BagCategory, Variant, VariantIn, VariantKey

logger = logging.getLogger(__name__)


async def decrement_stock(
    session: AsyncSession,
    bag_id: UUID,
    variant_key: VariantKey,
    quantity: int,
) -> Variant:
    """
    在庫引き落としコマンド

    呼び出し側のトランザクションに参加する (commit しない)。
    注文側はマーカー更新と同じトランザクションで呼ぶことで、
    「引き落とし済み」と「在庫減算」を 1 単位にしている。

    Raises:
        StockAdjustError: 在庫不足、またはバリアントが存在しない
    """
    result = await session.execute(
        update(bag_variants)
        .where(
            bag_variants.c.bag_id == bag_id,
            bag_variants.c.size == variant_key.size,
            bag_variants.c.color == variant_key.color,
            bag_variants.c.stock >= quantity,
        )
        .values(stock=bag_variants.c.stock - quantity)
    )
    if result.rowcount != 1:
        raise StockAdjustError(bag_id, variant_key.size, variant_key.color, quantity)

    row = (
        await session.execute(
            select(bag_variants).where(
                bag_variants.c.bag_id == bag_id,
                bag_variants.c.size == variant_key.size,
                bag_variants.c.color == variant_key.color,
            )
        )
    ).fetchone()
    return queries.variant_from_row(row)


async def create_bag(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    name: str,
    description: str,
    category: BagCategory,
    brand: str,
    variants: list[VariantIn],
    featured: bool = False,
) -> Bag:
    """
    商品登録コマンド (管理者用)

    バリアントは 1 つ以上必要。同じサイズ × カラーの重複は認めない。
    """
    if not variants:
        raise ValidationError("A bag needs at least one variant")
    keys = {(v.size.value, v.color) for v in variants}
    if len(keys) != len(variants):
        raise ValidationError("Duplicate size/color combination in variants")

    now = datetime.now(timezone.utc)
    bag_id = uuid4()

    await session.execute(
        bags.insert().values(
            id=bag_id,
            name=name,
            description=description,
            category=category.value,
            brand=brand,
            featured=featured,
            created_at=now,
            updated_at=now,
        )
    )
    await session.execute(
        bag_variants.insert(),
        [
            {
                "id": uuid4(),
                "bag_id": bag_id,
                "size": v.size.value,
                "color": v.color,
                "price": v.price,
                "stock": v.stock,
                "sku": v.sku,
            }
            for v in variants
        ],
    )

    event = BagCreated(
        bag_id=bag_id,
        name=name,
        category=category.value,
        variants=[v.model_dump(mode="json") for v in variants],
        timestamp=now,
    )
    event_data = event.model_dump(mode="json")
    await event_store.append_event(session, bag_id, "Bag", "BagCreated", event_data, 0)
    await session.commit()

    await event_store.publish(redis, "catalog_events", "BagCreated", event_data)
    logger.info("Bag %s created with %d variants", bag_id, len(variants))

    return await queries.get_bag(session, bag_id)
