"""
Order Service — コマンドハンドラ (CQRS の Write 側)

各コマンドは 1 つの楽観的トランザクションとして実行する:
  1. 入力検証（ストアに触れる前に失敗させる）
  2. トランザクション内で読み取り → 集約で検証 → 書き込み予約
  3. コミット
  4. 生成されたイベントを監査ログと Redis Pub/Sub に書き出す
"""

import logging
import time
from collections import Counter
from typing import Protocol

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from . import audit
from .aggregate import PAYMENT_METHODS, OrderAggregate, validate_status_request
from .document_store import Transaction, new_id, run_transaction
from .errors import (
    Forbidden,
    InsufficientStock,
    NotFound,
    TransactionFailure,
    Unavailable,
    ValidationError,
)
from .identity import Actor
from .policy import (
    authorize_escrow_release,
    authorize_payment_confirmation,
    authorize_status_request,
    authorize_status_update,
)

logger = logging.getLogger(__name__)


class UserDirectory(Protocol):
    async def get_user(self, user_id: str) -> dict | None: ...


# ── 注文作成 ─────────────────────────────────────


def _validate_order_request(
    seller_id: str,
    products: list[dict],
    payment_method: str,
    delivery_address: dict | None,
) -> None:
    if not seller_id or not products:
        raise ValidationError("Missing required fields: seller_id and products")
    if not payment_method:
        raise ValidationError("Missing payment method")
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment method: {payment_method}")
    if not delivery_address or not all(
        delivery_address.get(f) for f in ("street", "city", "phone")
    ):
        raise ValidationError("Missing or invalid delivery address: street, city and phone are required")
    for item in products:
        quantity = item.get("quantity")
        if (
            not item.get("product_id")
            or not isinstance(quantity, int)
            or isinstance(quantity, bool)
            or quantity <= 0
        ):
            raise ValidationError("Invalid product data: product_id and a positive quantity are required")


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    users: UserDirectory,
    buyer_id: str,
    seller_id: str,
    products: list[dict],
    payment_method: str,
    delivery_address: dict,
    chat_id: str | None = None,
) -> dict:
    """
    注文作成コマンド

    在庫の確認・減算、注文の作成、チャットへの紐付けを
    1 つのトランザクションでまとめてコミットする。
    どれか 1 つでも失敗すれば何も書き込まれない。
    """
    _validate_order_request(seller_id, products, payment_method, delivery_address)

    seller = await users.get_user(seller_id)
    if seller is None:
        raise NotFound("Seller not found")
    if seller.get("role") != "seller":
        raise Forbidden("User is not a seller")

    async def reserve(txn: Transaction) -> OrderAggregate:
        chat = await txn.get("chats", chat_id) if chat_id else None
        docs = await txn.get_all("products", [item["product_id"] for item in products])

        if chat_id:
            # 事前チェックではなくトランザクション内で検証する
            if chat is None:
                raise NotFound("Chat not found")
            if chat.get("buyer_id") != buyer_id:
                raise Forbidden("Chat does not belong to this buyer")
            if chat.get("seller_id") != seller_id:
                raise Forbidden("Chat does not belong to this seller")

        reserved: Counter = Counter()
        stock_levels: dict[str, int] = {}
        lines = []
        for item, product in zip(products, docs):
            product_id = item["product_id"]
            if product is None:
                raise NotFound(f"Product {product_id} not found")
            if product.get("seller_id") != seller_id:
                raise Forbidden(f"Product {product_id} does not belong to seller")
            if product.get("status") != "active":
                raise Unavailable(f"Product {product_id} is not available")

            reserved[product_id] += item["quantity"]
            stock_levels[product_id] = product.get("stock", 0)
            if stock_levels[product_id] < reserved[product_id]:
                raise InsufficientStock(
                    f"Insufficient stock for {product.get('name', product_id)}. "
                    f"Available: {stock_levels[product_id]}, Requested: {reserved[product_id]}"
                )
            lines.append({
                "product_id": product_id,
                "name": product.get("name"),
                "price": product["price"],
                "quantity": item["quantity"],
                "image_url": product.get("image_url"),
            })

        # ── ここから書き込み ──
        for product_id, quantity in reserved.items():
            txn.update("products", product_id, {"stock": stock_levels[product_id] - quantity})

        order_id = new_id()
        agg = OrderAggregate.create(
            order_id, buyer_id, seller_id, lines,
            payment_method, delivery_address, chat_id, txn.now,
        )
        txn.set("orders", order_id, agg.doc)

        if chat_id:
            chat_update = {"order_id": order_id}
            # 明細が 1 行のときだけ current_product_id を更新する
            if len(lines) == 1:
                chat_update["current_product_id"] = lines[0]["product_id"]
            txn.update("chats", chat_id, chat_update)
        return agg

    agg = await run_transaction(session, reserve)
    await audit.dispatch(session, redis, agg.events)

    logger.info(
        "Order created: %s by buyer %s from seller %s (source=%s)",
        agg.id, buyer_id, seller_id, agg.doc["order_source"],
    )
    return {"order_id": agg.id, "total_amount": agg.total_amount}


# ── ステータス遷移 ───────────────────────────────


async def update_order_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    actor: Actor,
    order_id: str,
    status: str,
    tracking_number: str | None = None,
    tracking_provider: str | None = None,
    proof_of_delivery: dict | None = None,
    notes: str | None = None,
) -> dict:
    """
    注文ステータス更新コマンド

    キャンセル時の在庫戻しはステータス書き込みと同じトランザクションで行う。
    明細の商品が 1 つでも読めなければ更新全体を中止する。
    """
    if not order_id or not status:
        raise ValidationError("Missing required fields: order_id and status")
    # 購入者の権限外の要求は入力内容より先に拒否する
    authorize_status_request(actor, status).enforce()
    validate_status_request(status, tracking_number, proof_of_delivery)

    requested_fields = {
        "tracking_number": tracking_number,
        "tracking_provider": tracking_provider,
        "proof_of_delivery": proof_of_delivery,
        "notes": notes,
    }

    async def apply(txn: Transaction) -> OrderAggregate:
        order = await txn.get("orders", order_id)
        if order is None:
            raise NotFound("Order not found")

        decision = authorize_status_update(actor, order, status).enforce()
        payload = {k: v for k, v in requested_fields.items() if k in decision.permitted_fields}

        agg = OrderAggregate(order, txn.now)
        agg.transition(actor.user_id, status, **payload)

        restocks: Counter = Counter()
        if status == "cancelled":
            for line in agg.products:
                restocks[line["product_id"]] += line["quantity"]
        stock_levels = {}
        for product_id in restocks:
            product = await txn.get("products", product_id)
            if product is None:
                raise TransactionFailure(
                    f"Product {product_id} not found; cannot restore stock for order {order_id}"
                )
            stock_levels[product_id] = product.get("stock", 0)

        # ── ここから書き込み ──
        for product_id, quantity in restocks.items():
            txn.update("products", product_id, {"stock": stock_levels[product_id] + quantity})
        txn.update("orders", order_id, agg.changes)
        return agg

    agg = await run_transaction(session, apply)
    await audit.dispatch(session, redis, agg.events)

    logger.info(
        "Order %s status updated from %s to %s by %s",
        order_id, agg.doc["status"], agg.status, actor.user_id,
    )
    return {"order_id": order_id, "final_status": agg.status}


# ── 支払い確認 ───────────────────────────────────


async def confirm_payment(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    actor: Actor,
    order_id: str,
    transaction_id: str,
    receipt_id: str | None = None,
) -> dict:
    """
    支払い確認コマンド（KBZPay / WavePay などモバイル決済）

    代引き(COD)は配達時に確定するのでここでは受け付けない。
    配達済みの注文ならエスクローも同じ書き込みで解放する。
    """
    if not order_id:
        raise ValidationError("Missing required field: order_id")
    if not transaction_id or not transaction_id.strip():
        raise ValidationError("Missing required field: transaction_id")
    receipt_id = receipt_id or f"RECEIPT_{order_id}_{int(time.time() * 1000)}"

    async def apply(txn: Transaction) -> tuple[OrderAggregate, dict]:
        order = await txn.get("orders", order_id)
        if order is None:
            raise NotFound("Order not found")
        authorize_payment_confirmation(actor, order).enforce()

        agg = OrderAggregate(order, txn.now)
        confirmation = agg.confirm_payment(actor.user_id, transaction_id.strip(), receipt_id)
        txn.update("orders", order_id, agg.changes)
        return agg, confirmation

    agg, confirmation = await run_transaction(session, apply)
    await audit.dispatch(session, redis, agg.events)

    if agg.escrow_released and not agg.doc.get("escrow_released"):
        logger.info("Escrow automatically released for order %s after payment confirmation", order_id)
    logger.info("Payment confirmed for order %s by buyer %s", order_id, actor.user_id)
    return {"order_id": order_id, "payment_confirmation": confirmation}


# ── エスクロー手動解放 ───────────────────────────


async def release_escrow(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    actor: Actor,
    order_id: str,
) -> dict:
    """
    エスクロー手動解放コマンド（管理者のみ）

    自動解放が行われなかった場合の救済手段。
    配達済み・支払済みかどうかは検証しない（運用で担保する）。
    """
    authorize_escrow_release(actor).enforce()
    if not order_id:
        raise ValidationError("Missing required field: order_id")

    async def apply(txn: Transaction) -> OrderAggregate:
        order = await txn.get("orders", order_id)
        if order is None:
            raise NotFound("Order not found")
        agg = OrderAggregate(order, txn.now)
        agg.release_escrow(actor.user_id, triggered_by="admin_override", manual=True)
        txn.update("orders", order_id, agg.changes)
        return agg

    agg = await run_transaction(session, apply)
    await audit.dispatch(session, redis, agg.events)

    logger.info(
        "Escrow manually released for order %s to seller %s by admin %s",
        order_id, agg.seller_id, actor.user_id,
    )
    return {"order_id": order_id, "amount": agg.total_amount, "seller_id": agg.seller_id}
