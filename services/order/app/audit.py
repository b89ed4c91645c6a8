"""
Order Service — 監査ログ書き込み

コミット済みのドメインイベントを order_logs に追記し、
Redis Pub/Sub の order_events チャネルにも発行する。

ここでの失敗は主処理の結果に影響させない:
例外はすべてログに記録して握りつぶす。
"""

import json
import logging

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .document_store import new_id, server_timestamp
from .events import OrderEvent

logger = logging.getLogger(__name__)

CHANNEL = "order_events"


async def append_log(session: AsyncSession, event: OrderEvent, timestamp: str) -> str:
    """order_logs に 1 件追記する。更新・削除は一切しない。"""
    log_id = new_id()
    await session.execute(
        text("""
            INSERT INTO order_logs
                (id, order_id, event_type, actor_id, metadata, timestamp)
            VALUES
                (:id, :order_id, :event_type, :actor_id, :metadata, :timestamp)
        """),
        {
            "id": log_id,
            "order_id": event.order_id,
            "event_type": event.event_type,
            "actor_id": event.actor_id,
            "metadata": json.dumps(event.metadata, default=str),
            "timestamp": timestamp,
        },
    )
    await session.commit()
    return log_id


async def dispatch(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    events: list[OrderEvent],
) -> None:
    """コミット後に呼ぶ。1 件の失敗が他のイベントの書き込みを妨げないようにする。"""
    for event in events:
        timestamp = server_timestamp()
        try:
            await append_log(session, event, timestamp)
        except Exception:
            await session.rollback()
            logger.exception(
                "Failed to write audit log %s for order %s", event.event_type, event.order_id
            )

        if redis is None:
            continue
        try:
            await redis.publish(CHANNEL, json.dumps(event.to_message(timestamp), default=str))
        except Exception:
            logger.exception("Failed to publish %s for order %s", event.event_type, event.order_id)
