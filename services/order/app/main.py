"""
Order Service — FastAPI エントリーポイント

注文作成・ステータス変更 (Command) と注文参照・売上集計 (Query) を提供する。
在庫は同じ DB の products テーブルで管理し、在庫アジャスター経由でのみ増減する。

呼び出し元の識別は前段の認証レイヤーに任せ、
X-User-Id / X-User-Role ヘッダーで受け取る。
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, event_store, queries
from .aggregate import OrderStatus
from .config import Settings
from .errors import (
    Forbidden,
    OrderNotFound,
    OrderServiceError,
    ProductNotFound,
    Unauthorized,
    UnknownStatus,
)
from .queries import Requester

logger = logging.getLogger(__name__)

settings = Settings.from_env()

engine = create_async_engine(settings.database_url, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if settings.redis_url:
        redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
    yield
    if redis_pool is not None:
        await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── エラーハンドラ ───────────────────────────────


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    if exc.status_code >= 500:
        # 詳細はログにだけ残し、利用者には汎用メッセージを返す
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.public_message},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    message = ", ".join(
        f"{'.'.join(str(p) for p in err['loc'][1:])}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"success": False, "message": message})


# ── 呼び出し元 ───────────────────────────────────


async def current_user(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Requester:
    if not x_user_id:
        raise Unauthorized()
    return Requester(user_id=x_user_id, is_admin=x_user_role == "admin")


async def admin_user(requester: Requester = Depends(current_user)) -> Requester:
    if not requester.is_admin:
        raise Forbidden("Role is not allowed to access this resource")
    return requester


# ── Request Models ───────────────────────────────


class OrderItemIn(BaseModel):
    product_id: str | None = None
    name: str | None = None
    quantity: int | None = None
    unit_price: Decimal | None = None


class ShippingIn(BaseModel):
    address: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    postal_code: str | None = None
    phone: str | None = None


class PaymentIn(BaseModel):
    id: str | None = None
    status: str | None = None
    method: str | None = None


class PricingIn(BaseModel):
    items_total: Decimal | None = None
    tax: Decimal | None = None
    shipping: Decimal | None = None
    grand_total: Decimal | None = None


class NewOrderRequest(BaseModel):
    items: list[OrderItemIn] = []
    shipping: ShippingIn | None = None
    payment: PaymentIn | None = None
    pricing: PricingIn | None = None


class UpdateStatusRequest(BaseModel):
    status: str


def _dump(model: BaseModel | None) -> dict | None:
    return model.model_dump(exclude_none=True) if model is not None else None


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/order/new", status_code=201)
async def cmd_create_order(
    req: NewOrderRequest,
    requester: Requester = Depends(current_user),
    idempotency_key: str | None = Header(default=None),
):
    """注文作成コマンド"""
    async with async_session() as session:
        order = await commands.create_order(
            session,
            redis_pool,
            settings,
            requester.user_id,
            [item.model_dump() for item in req.items],
            _dump(req.shipping),
            _dump(req.payment),
            _dump(req.pricing),
            idempotency_key=idempotency_key,
        )
    return {"success": True, "message": "Order placed successfully!", "order": order}


@app.put("/admin/order/{order_id}")
async def cmd_update_order(
    order_id: str,
    req: UpdateStatusRequest,
    _: Requester = Depends(admin_user),
):
    """ステータス変更コマンド（管理者）"""
    try:
        new_status = OrderStatus(req.status)
    except ValueError:
        raise UnknownStatus(req.status, [s.value for s in OrderStatus]) from None

    async with async_session() as session:
        order = await commands.transition_order(
            session, redis_pool, settings, order_id, new_status
        )
    return {
        "success": True,
        "message": f"Order status updated to {new_status.value}",
        "order": order,
    }


@app.delete("/admin/order/{order_id}")
async def cmd_delete_order(order_id: str, _: Requester = Depends(admin_user)):
    """注文削除コマンド（管理者）"""
    async with async_session() as session:
        await commands.delete_order(session, redis_pool, settings, order_id)
    return {"success": True, "message": "Order deleted successfully."}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/order/{order_id}")
async def query_get_order(order_id: str, requester: Requester = Depends(current_user)):
    """注文を取得（持ち主か管理者のみ）"""
    async with async_session() as session:
        order = await queries.get_order(session, order_id, requester)
    return {"success": True, "order": order}


@app.get("/orders/me")
async def query_my_orders(requester: Requester = Depends(current_user)):
    """自分の注文一覧（新しい順）"""
    async with async_session() as session:
        orders = await queries.list_user_orders(session, requester.user_id)
    return {"success": True, "count": len(orders), "orders": orders}


@app.get("/admin/orders")
async def query_all_orders(_: Requester = Depends(admin_user)):
    """全注文一覧と売上合計（管理者）"""
    async with async_session() as session:
        summary = await queries.list_all_orders(session)
        status_counts = await queries.count_by_status(session)
    return {"success": True, **summary, "status_counts": status_counts}


@app.get("/products/{product_id}")
async def query_get_product(product_id: str):
    """商品の現在の在庫数"""
    async with async_session() as session:
        product = await queries.get_product(session, product_id)
    if not product:
        raise ProductNotFound(product_id)
    return {"success": True, "product": product}


# ── Event Store (運用・調査用) ───────────────────


@app.get("/admin/order/{order_id}/events")
async def get_order_events(order_id: str, _: Requester = Depends(admin_user)):
    """注文のイベント履歴（在庫の確定・戻しの突き合わせに使う）"""
    async with async_session() as session:
        events = await event_store.load_events(session, order_id)
    if not events:
        raise OrderNotFound(order_id)
    return {"success": True, "events": events}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
