"""
Catalog — クエリハンドラ (CQRS Read 側)

チェックアウト時の在庫確認もここを通る。
ただし読み取った在庫数は参考値で、実際の引き落としは
commands.decrement_stock の条件付き UPDATE が決める。
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..tables import bag_variants, bags
from .models import Bag, Variant


def variant_from_row(row) -> Variant:
    return Variant(
        id=row.id,
        bag_id=row.bag_id,
        size=row.size,
        color=row.color,
        price=row.price,
        stock=row.stock,
        sku=row.sku,
    )


async def get_variant(
    session: AsyncSession,
    bag_id: UUID,
    size: str,
    color: str,
) -> Variant | None:
    result = await session.execute(
        select(bag_variants).where(
            bag_variants.c.bag_id == bag_id,
            bag_variants.c.size == size,
            bag_variants.c.color == color,
        )
    )
    row = result.fetchone()
    return variant_from_row(row) if row else None


async def get_bag(session: AsyncSession, bag_id: UUID) -> Bag | None:
    result = await session.execute(select(bags).where(bags.c.id == bag_id))
    row = result.fetchone()
    if not row:
        return None
    variants = await session.execute(
        select(bag_variants)
        .where(bag_variants.c.bag_id == bag_id)
        .order_by(bag_variants.c.sku)
    )
    return Bag(
        id=row.id,
        name=row.name,
        description=row.description,
        category=row.category,
        brand=row.brand,
        featured=row.featured,
        variants=[variant_from_row(v) for v in variants.fetchall()],
    )


async def list_bags(session: AsyncSession, featured_only: bool = False) -> list[Bag]:
    query = select(bags).order_by(bags.c.name)
    if featured_only:
        query = query.where(bags.c.featured.is_(True))
    rows = (await session.execute(query)).fetchall()

    variants = await session.execute(
        select(bag_variants).order_by(bag_variants.c.sku)
    )
    by_bag: dict[UUID, list[Variant]] = {}
    for v in variants.fetchall():
        by_bag.setdefault(v.bag_id, []).append(variant_from_row(v))

    return [
        Bag(
            id=row.id,
            name=row.name,
            description=row.description,
            category=row.category,
            brand=row.brand,
            featured=row.featured,
            variants=by_bag.get(row.id, []),
        )
        for row in rows
    ]
