"""Order Service テスト共通 fixture"""

import os

# app.config は import 時に DATABASE_URL を要求する
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./order-service-test.db")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app import commands
from app.document_store import get_document, insert_document
from app.identity import Actor
from app.schema import init_schema

DELIVERY_ADDRESS = {"street": "1 A St", "city": "Yangon", "phone": "+959000000000"}


class FakeRedis:
    """publish されたメッセージを記録するだけの Redis"""

    def __init__(self):
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


class FakeUserDirectory:
    def __init__(self, users: dict[str, dict]):
        self.users = users

    async def get_user(self, user_id: str) -> dict | None:
        return self.users.get(user_id)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def users():
    return FakeUserDirectory({
        "buyer-1": {"role": "buyer"},
        "buyer-2": {"role": "buyer"},
        "seller-1": {"role": "seller"},
        "seller-2": {"role": "seller"},
        "admin-1": {"role": "admin"},
    })


@pytest.fixture
def buyer():
    return Actor(user_id="buyer-1", role="buyer", verification_status="verified")


@pytest.fixture
def other_buyer():
    return Actor(user_id="buyer-2", role="buyer")


@pytest.fixture
def seller():
    return Actor(user_id="seller-1", role="seller", verification_status="verified")


@pytest.fixture
def other_seller():
    return Actor(user_id="seller-2", role="seller")


@pytest.fixture
def admin():
    return Actor(user_id="admin-1", role="admin")


@pytest.fixture
def make_product(session):
    async def _make(stock=10, price=1000, seller_id="seller-1", status="active", name="Longyi"):
        return await insert_document(session, "products", {
            "seller_id": seller_id,
            "name": name,
            "price": price,
            "stock": stock,
            "status": status,
            "image_url": None,
        })
    return _make


@pytest.fixture
def place_order(session, redis, users):
    """buyer-1 が seller-1 から注文する"""
    async def _place(product_id, quantity=1, payment_method="COD", buyer_id="buyer-1", chat_id=None):
        result = await commands.create_order(
            session, redis, users, buyer_id, "seller-1",
            [{"product_id": product_id, "quantity": quantity}],
            payment_method, DELIVERY_ADDRESS, chat_id,
        )
        return result["order_id"]
    return _place


@pytest.fixture
def fetch(session):
    async def _fetch(collection, doc_id):
        doc = await get_document(session, collection, doc_id)
        await session.rollback()
        return doc
    return _fetch
