"""
Storefront — イベントストア

注文・商品に起きた事実をすべて追記専用で記録する (監査ログ)。
現在の状態はテーブル (orders / bag_variants) が持ち、
ここには「いつ・何が起きたか」を残す。

コミット後に Redis Pub/Sub で同じイベントを他サービスへ通知する。
"""

import json
import logging
from datetime import datetime, timezone
from uuid import UUID

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .tables import event_store

logger = logging.getLogger(__name__)


async def current_version(session: AsyncSession, aggregate_id: UUID) -> int:
    result = await session.execute(
        select(func.coalesce(func.max(event_store.c.version), 0)).where(
            event_store.c.aggregate_id == aggregate_id
        )
    )
    return result.scalar_one()


async def append_event(
    session: AsyncSession,
    aggregate_id: UUID,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int | None = None,
) -> int:
    """
    イベントを追記する。commit は呼び出し側で行う。

    expected_version を省略すると現在の最新バージョンの次に追記する。
    同じバージョンが既にあれば一意制約違反になる (楽観ロック)。
    """
    if expected_version is None:
        expected_version = await current_version(session, aggregate_id)
    new_version = expected_version + 1
    await session.execute(
        event_store.insert().values(
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            event_type=event_type,
            event_data=event_data,
            version=new_version,
            created_at=datetime.now(timezone.utc),
        )
    )
    return new_version


async def load_events(session: AsyncSession, aggregate_id: UUID) -> list[dict]:
    result = await session.execute(
        select(event_store)
        .where(event_store.c.aggregate_id == aggregate_id)
        .order_by(event_store.c.version.asc())
    )
    return [_row_to_dict(row) for row in result.fetchall()]


async def load_all_events(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        select(event_store).order_by(event_store.c.id.asc())
    )
    return [_row_to_dict(row) for row in result.fetchall()]


def _row_to_dict(row) -> dict:
    return {
        "aggregate_id": str(row.aggregate_id),
        "aggregate_type": row.aggregate_type,
        "event_type": row.event_type,
        "event_data": row.event_data,
        "version": row.version,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def publish(
    redis: aioredis.Redis | None,
    channel: str,
    event_type: str,
    data: dict,
) -> None:
    """
    コミット済みのイベントを Redis Pub/Sub に流す。

    Pub/Sub は fire-and-forget。DB には既に記録済みなので、
    Redis が落ちていても呼び出し元の処理は失敗させない。
    """
    if redis is None:
        return
    try:
        await redis.publish(
            channel,
            json.dumps({"event_type": event_type, "data": data}, default=str),
        )
    except RedisError as e:
        logger.warning("Failed to publish %s on %s: %s", event_type, channel, e)
