"""
Order Service — クエリハンドラ (CQRS の Read 側)

注文ドキュメントと監査ログを読み取るだけで、状態は変更しない。
"""

import json

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .document_store import find_documents, get_document
from .errors import NotFound, ValidationError
from .identity import Actor
from .policy import authorize_log_access, authorize_order_view


async def get_order(session: AsyncSession, actor: Actor, order_id: str) -> dict:
    """注文の詳細を取得する（購入者・販売者・管理者のみ）。"""
    order = await get_document(session, "orders", order_id)
    if not order:
        raise NotFound("Order not found")
    authorize_order_view(actor, order).enforce()
    return order


async def list_user_orders(session: AsyncSession, actor: Actor) -> list[dict]:
    """ロールに応じて、購入した注文または販売した注文を新しい順に返す。"""
    if actor.role == "buyer":
        orders = await find_documents(
            session, "orders", order_by="created_at", descending=True, buyer_id=actor.user_id,
        )
    elif actor.role == "seller":
        orders = await find_documents(
            session, "orders", order_by="created_at", descending=True, seller_id=actor.user_id,
        )
    else:
        raise ValidationError("User must have a valid role (buyer or seller)")
    for order in orders:
        order["user_role"] = actor.role
    return orders


async def get_order_logs(session: AsyncSession, actor: Actor, order_id: str) -> list[dict]:
    """
    注文の監査ログを時系列順（古い順）に返す（管理者のみ）。
    timestamp が欠けているエントリは末尾に並べ、同時刻は書き込み順とする。
    """
    authorize_log_access(actor).enforce()
    if not await get_document(session, "orders", order_id):
        raise NotFound("Order not found")

    result = await session.execute(
        text("""
            SELECT id, event_type, actor_id, metadata, timestamp
            FROM order_logs
            WHERE order_id = :order_id
            ORDER BY timestamp IS NULL, timestamp, seq
        """),
        {"order_id": order_id},
    )
    logs = [
        {
            "log_id": row.id,
            "event_type": row.event_type,
            "actor_id": row.actor_id,
            "timestamp": row.timestamp,
            "metadata": json.loads(row.metadata) if row.metadata else {},
        }
        for row in result.fetchall()
    ]
    return logs
