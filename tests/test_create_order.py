"""注文作成トランザクションのテスト"""

import asyncio
import json

import pytest

from app import commands
from app.document_store import insert_document, run_transaction
from app.errors import (
    Forbidden,
    InsufficientStock,
    NotFound,
    Unavailable,
    ValidationError,
)
from app.queries import get_order_logs

from conftest import DELIVERY_ADDRESS


async def _create(session, redis, users, products, payment_method="COD", chat_id=None,
                  buyer_id="buyer-1", seller_id="seller-1", address=DELIVERY_ADDRESS):
    return await commands.create_order(
        session, redis, users, buyer_id, seller_id, products, payment_method, address, chat_id,
    )


class TestCreateOrder:
    """正常系"""

    @pytest.mark.asyncio
    async def test_creates_pending_order_and_reserves_stock(self, session, redis, users, make_product, fetch):
        product_id = await make_product(stock=3, price=2500)

        result = await _create(session, redis, users, [{"product_id": product_id, "quantity": 1}])

        assert result["total_amount"] == 2500
        order = await fetch("orders", result["order_id"])
        assert order["status"] == "pending"
        assert order["payment_status"] == "pending"
        assert order["escrow_released"] is False
        assert order["order_source"] == "direct"
        assert order["delivery_address"]["notes"] == ""
        assert order["products"] == [{
            "product_id": product_id,
            "name": "Longyi",
            "price": 2500,
            "quantity": 1,
            "image_url": None,
        }]
        assert order["created_at"] and order["updated_at"]
        assert (await fetch("products", product_id))["stock"] == 2

    @pytest.mark.asyncio
    async def test_total_is_sum_of_line_totals(self, session, redis, users, make_product, fetch):
        shirt = await make_product(stock=5, price=1000)
        hat = await make_product(stock=5, price=300, name="Hat")

        result = await _create(session, redis, users, [
            {"product_id": shirt, "quantity": 2},
            {"product_id": hat, "quantity": 3},
        ], payment_method="KBZPay")

        assert result["total_amount"] == 2900
        assert (await fetch("products", shirt))["stock"] == 3
        assert (await fetch("products", hat))["stock"] == 2

    @pytest.mark.asyncio
    async def test_repeated_product_lines_share_stock(self, session, redis, users, make_product, fetch):
        product_id = await make_product(stock=3)

        with pytest.raises(InsufficientStock):
            await _create(session, redis, users, [
                {"product_id": product_id, "quantity": 2},
                {"product_id": product_id, "quantity": 2},
            ])
        assert (await fetch("products", product_id))["stock"] == 3

    @pytest.mark.asyncio
    async def test_snapshot_is_not_affected_by_catalog_changes(self, session, redis, users, make_product, fetch):
        product_id = await make_product(stock=3, price=1000)
        result = await _create(session, redis, users, [{"product_id": product_id, "quantity": 1}])

        async def reprice(txn):
            await txn.get("products", product_id)
            txn.update("products", product_id, {"price": 9999})
        await run_transaction(session, reprice)

        order = await fetch("orders", result["order_id"])
        assert order["products"][0]["price"] == 1000
        assert order["total_amount"] == 1000

    @pytest.mark.asyncio
    async def test_writes_audit_log_and_publishes_event(self, session, redis, users, make_product, admin):
        product_id = await make_product()
        result = await _create(session, redis, users, [{"product_id": product_id, "quantity": 1}])

        logs = await get_order_logs(session, admin, result["order_id"])
        assert [log["event_type"] for log in logs] == ["order_created"]
        assert logs[0]["actor_id"] == "buyer-1"
        assert logs[0]["metadata"]["order_source"] == "direct"

        channel, message = redis.published[0]
        assert channel == "order_events"
        assert json.loads(message)["event_type"] == "order_created"


class TestCreateOrderValidation:
    """トランザクション前の入力チェック"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payment_method", ["", "Cash", "Visa"])
    async def test_rejects_invalid_payment_method(self, session, redis, users, make_product, payment_method):
        product_id = await make_product()
        with pytest.raises(ValidationError):
            await _create(session, redis, users, [{"product_id": product_id, "quantity": 1}],
                          payment_method=payment_method)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["street", "city", "phone"])
    async def test_rejects_incomplete_address(self, session, redis, users, make_product, missing):
        product_id = await make_product()
        address = {**DELIVERY_ADDRESS, missing: ""}
        with pytest.raises(ValidationError, match="delivery address"):
            await _create(session, redis, users, [{"product_id": product_id, "quantity": 1}], address=address)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -1, 1.5, None])
    async def test_rejects_non_positive_quantity(self, session, redis, users, make_product, fetch, quantity):
        product_id = await make_product(stock=3)
        with pytest.raises(ValidationError):
            await _create(session, redis, users, [{"product_id": product_id, "quantity": quantity}])
        assert (await fetch("products", product_id))["stock"] == 3

    @pytest.mark.asyncio
    async def test_rejects_empty_cart(self, session, redis, users):
        with pytest.raises(ValidationError, match="Missing required fields"):
            await _create(session, redis, users, [])

    @pytest.mark.asyncio
    async def test_unknown_seller(self, session, redis, users, make_product):
        product_id = await make_product()
        with pytest.raises(NotFound, match="Seller not found"):
            await _create(session, redis, users, [{"product_id": product_id, "quantity": 1}],
                          seller_id="ghost")

    @pytest.mark.asyncio
    async def test_seller_must_have_seller_role(self, session, redis, users, make_product):
        product_id = await make_product()
        with pytest.raises(Forbidden, match="not a seller"):
            await _create(session, redis, users, [{"product_id": product_id, "quantity": 1}],
                          seller_id="buyer-2")


class TestCreateOrderInsideTransaction:
    """トランザクション内の検証。失敗時は何も書き込まれない"""

    @pytest.mark.asyncio
    async def test_missing_product_aborts_whole_cart(self, session, redis, users, make_product, fetch):
        product_id = await make_product(stock=3)
        with pytest.raises(NotFound, match="not found"):
            await _create(session, redis, users, [
                {"product_id": product_id, "quantity": 1},
                {"product_id": "missing", "quantity": 1},
            ])
        assert (await fetch("products", product_id))["stock"] == 3

    @pytest.mark.asyncio
    async def test_product_of_another_seller(self, session, redis, users, make_product):
        product_id = await make_product(seller_id="seller-2")
        with pytest.raises(Forbidden, match="does not belong to seller"):
            await _create(session, redis, users, [{"product_id": product_id, "quantity": 1}])

    @pytest.mark.asyncio
    async def test_inactive_product(self, session, redis, users, make_product):
        product_id = await make_product(status="inactive")
        with pytest.raises(Unavailable, match="not available"):
            await _create(session, redis, users, [{"product_id": product_id, "quantity": 1}])

    @pytest.mark.asyncio
    async def test_insufficient_stock_keeps_other_lines_untouched(self, session, redis, users, make_product, fetch):
        plenty = await make_product(stock=10)
        scarce = await make_product(stock=1, name="Rare")

        with pytest.raises(InsufficientStock, match="Available: 1, Requested: 2"):
            await _create(session, redis, users, [
                {"product_id": plenty, "quantity": 4},
                {"product_id": scarce, "quantity": 2},
            ])
        assert (await fetch("products", plenty))["stock"] == 10
        assert (await fetch("products", scarce))["stock"] == 1
        assert redis.published == []


class TestCreateOrderFromChat:
    """チャットからの注文"""

    @pytest.mark.asyncio
    async def test_single_line_sets_current_product(self, session, redis, users, make_product, fetch):
        product_id = await make_product()
        chat_id = await insert_document(session, "chats", {
            "buyer_id": "buyer-1", "seller_id": "seller-1",
            "current_product_id": None, "order_id": None,
        })

        result = await _create(session, redis, users, [{"product_id": product_id, "quantity": 1}],
                               chat_id=chat_id)

        chat = await fetch("chats", chat_id)
        order = await fetch("orders", result["order_id"])
        assert chat["order_id"] == result["order_id"]
        assert chat["current_product_id"] == product_id
        assert order["order_source"] == "chat"
        assert order["chat_id"] == chat_id

    @pytest.mark.asyncio
    async def test_multi_line_keeps_current_product(self, session, redis, users, make_product, fetch):
        first = await make_product()
        second = await make_product(name="Hat")
        chat_id = await insert_document(session, "chats", {
            "buyer_id": "buyer-1", "seller_id": "seller-1",
            "current_product_id": "earlier", "order_id": None,
        })

        result = await _create(session, redis, users, [
            {"product_id": first, "quantity": 1},
            {"product_id": second, "quantity": 1},
        ], chat_id=chat_id)

        chat = await fetch("chats", chat_id)
        assert chat["order_id"] == result["order_id"]
        assert chat["current_product_id"] == "earlier"

    @pytest.mark.asyncio
    async def test_chat_of_another_buyer_is_rejected(self, session, redis, users, make_product, fetch):
        product_id = await make_product(stock=2)
        chat_id = await insert_document(session, "chats", {"buyer_id": "buyer-2", "seller_id": "seller-1"})

        with pytest.raises(Forbidden, match="does not belong to this buyer"):
            await _create(session, redis, users, [{"product_id": product_id, "quantity": 1}],
                          chat_id=chat_id)
        assert (await fetch("products", product_id))["stock"] == 2
        assert (await fetch("chats", chat_id)).get("order_id") is None

    @pytest.mark.asyncio
    async def test_missing_chat(self, session, redis, users, make_product):
        product_id = await make_product()
        with pytest.raises(NotFound, match="Chat not found"):
            await _create(session, redis, users, [{"product_id": product_id, "quantity": 1}],
                          chat_id="no-such-chat")


class TestConcurrentOrders:
    """同時注文でも在庫を超えて売らない"""

    @pytest.mark.asyncio
    async def test_two_buyers_race_for_last_unit(self, session, session_factory, redis, users, make_product, fetch):
        product_id = await make_product(stock=1)

        async def attempt(buyer_id):
            async with session_factory() as own:
                return await _create(own, redis, users, [{"product_id": product_id, "quantity": 1}],
                                     buyer_id=buyer_id)

        results = await asyncio.gather(attempt("buyer-1"), attempt("buyer-2"), return_exceptions=True)

        successes = [r for r in results if isinstance(r, dict)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientStock)
        assert (await fetch("products", product_id))["stock"] == 0

    @pytest.mark.asyncio
    async def test_many_buyers_never_oversell(self, session, session_factory, redis, users, make_product, fetch):
        product_id = await make_product(stock=3)

        async def attempt(i):
            async with session_factory() as own:
                return await _create(own, redis, users, [{"product_id": product_id, "quantity": 1}],
                                     buyer_id=f"buyer-{i}")

        results = await asyncio.gather(*(attempt(i) for i in range(5)), return_exceptions=True)

        successes = [r for r in results if isinstance(r, dict)]
        assert len(successes) == 3
        assert all(isinstance(r, InsufficientStock) for r in results if isinstance(r, Exception))
        assert (await fetch("products", product_id))["stock"] == 0
