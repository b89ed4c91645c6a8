"""
Order Service — FastAPI エントリーポイント

CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離。
注文の作成・ステータス遷移・支払い確認・エスクロー解放はすべて
楽観的トランザクションで実行し、コミット後に監査ログへ記録する。
"""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .config import DATABASE_URL, IDENTITY_SERVICE_URL, LOG_LEVEL, REDIS_URL
from .errors import OrderError, ValidationError
from .identity import Actor, IdentityClient
from .schema import init_schema

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
identity_client = IdentityClient(IDENTITY_SERVICE_URL)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await init_schema(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


@app.exception_handler(OrderError)
async def handle_order_error(request: Request, exc: OrderError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    # リクエストボディの型エラーも validation_error として返す
    fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) for err in exc.errors())
    error = ValidationError(f"Invalid request body: {fields}")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "detail": "Internal server error"},
    )


async def current_actor(authorization: str | None = Header(default=None)) -> Actor:
    """Authorization: Bearer <token> を Identity Service で検証する。"""
    return await identity_client.verify(authorization)


# ── Request Models ───────────────────────────────

class OrderLine(BaseModel):
    product_id: str
    quantity: int


class DeliveryAddress(BaseModel):
    street: str = ""
    city: str = ""
    phone: str = ""
    notes: str | None = None


class CreateOrderRequest(BaseModel):
    seller_id: str
    products: list[OrderLine] = Field(default_factory=list)
    payment_method: str
    delivery_address: DeliveryAddress
    chat_id: str | None = None


class ProofOfDelivery(BaseModel):
    photo_url: str | None = None
    otp_code: str | None = None
    signature_url: str | None = None
    delivery_notes: str | None = None


class UpdateStatusRequest(BaseModel):
    status: str
    tracking_number: str | None = None
    tracking_provider: str | None = None
    proof_of_delivery: ProofOfDelivery | None = None
    notes: str | None = None


class ConfirmPaymentRequest(BaseModel):
    transaction_id: str = ""
    receipt_id: str | None = None


# ── Command Endpoints (Write 側) ─────────────────

@app.post("/commands/orders")
async def cmd_create_order(req: CreateOrderRequest, actor: Actor = Depends(current_actor)):
    """注文作成コマンド（購入者）"""
    async with async_session() as session:
        result = await commands.create_order(
            session, redis_pool, identity_client,
            actor.user_id, req.seller_id,
            [line.model_dump() for line in req.products],
            req.payment_method,
            req.delivery_address.model_dump(),
            req.chat_id,
        )
        return {"success": True, **result}


@app.post("/commands/orders/{order_id}/status")
async def cmd_update_status(
    order_id: str,
    req: UpdateStatusRequest,
    actor: Actor = Depends(current_actor),
):
    """注文ステータス更新コマンド（販売者・管理者・購入者のキャンセル）"""
    async with async_session() as session:
        result = await commands.update_order_status(
            session, redis_pool, actor, order_id, req.status,
            tracking_number=req.tracking_number,
            tracking_provider=req.tracking_provider,
            proof_of_delivery=req.proof_of_delivery.model_dump() if req.proof_of_delivery else None,
            notes=req.notes,
        )
        return {"success": True, **result}


@app.post("/commands/orders/{order_id}/payment")
async def cmd_confirm_payment(
    order_id: str,
    req: ConfirmPaymentRequest,
    actor: Actor = Depends(current_actor),
):
    """支払い確認コマンド（購入者、COD 以外）"""
    async with async_session() as session:
        result = await commands.confirm_payment(
            session, redis_pool, actor, order_id, req.transaction_id, req.receipt_id,
        )
        return {"success": True, **result}


@app.post("/commands/orders/{order_id}/release-escrow")
async def cmd_release_escrow(order_id: str, actor: Actor = Depends(current_actor)):
    """エスクロー手動解放コマンド（管理者のみ）"""
    async with async_session() as session:
        result = await commands.release_escrow(session, redis_pool, actor, order_id)
        return {"success": True, **result}


# ── Query Endpoints (Read 側) ────────────────────

@app.get("/queries/orders")
async def query_list_orders(actor: Actor = Depends(current_actor)):
    """自分の注文一覧（購入者は購入分、販売者は販売分）"""
    async with async_session() as session:
        orders = await queries.list_user_orders(session, actor)
        return {"success": True, "count": len(orders), "orders": orders}


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str, actor: Actor = Depends(current_actor)):
    async with async_session() as session:
        order = await queries.get_order(session, actor, order_id)
        return {"success": True, "order": order}


@app.get("/queries/orders/{order_id}/logs")
async def query_order_logs(order_id: str, actor: Actor = Depends(current_actor)):
    """注文の監査ログ（管理者のみ、時系列順）"""
    async with async_session() as session:
        logs = await queries.get_order_logs(session, actor, order_id)
        return {"success": True, "order_id": order_id, "count": len(logs), "logs": logs}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
