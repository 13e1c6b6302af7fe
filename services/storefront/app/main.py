"""
Storefront Service — FastAPI エントリーポイント

カート操作・クーポン適用・料金見積り・チェックアウト・注文追跡の API。
永続化は外部データサービス(DATABASE_URL があれば SQL、無ければ REST)に委譲し、
チェックアウト結果は Redis Pub/Sub の order_events チャネルへ発行する。
"""

import logging
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import queries
from .cart import CartSessions
from .coupons import apply_coupon
from .data_client import DataClient, RestDataClient, SqlDataClient
from .errors import (
    CartLineNotFoundError,
    CouponError,
    DataClientError,
    InsufficientStockError,
    OrderNotFoundError,
    OrderPersistenceError,
    ProductNotFoundError,
    StorefrontError,
    ValidationError,
)
from .models import CartLine
from .orchestrator import CheckoutOrchestrator

DATABASE_URL = os.environ.get("DATABASE_URL")
DATA_API_URL = os.environ.get("DATA_API_URL", "http://localhost:54321")
DATA_API_KEY = os.environ.get("DATA_API_KEY", "")
DATA_API_TIMEOUT = float(os.environ.get("DATA_API_TIMEOUT", "10"))
READ_RETRY_BACKOFF = float(os.environ.get("READ_RETRY_BACKOFF", "0.5"))
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

logger = logging.getLogger(__name__)

data_client: DataClient | None = None
redis_pool: aioredis.Redis | None = None
carts = CartSessions()


def create_data_client() -> DataClient:
    if DATABASE_URL:
        return SqlDataClient(DATABASE_URL, read_retry_backoff=READ_RETRY_BACKOFF)
    return RestDataClient(
        DATA_API_URL,
        DATA_API_KEY,
        timeout=DATA_API_TIMEOUT,
        read_retry_backoff=READ_RETRY_BACKOFF,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global data_client, redis_pool
    data_client = create_data_client()
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await data_client.aclose()


app = FastAPI(title="Storefront Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_orchestrator() -> CheckoutOrchestrator:
    return CheckoutOrchestrator(data_client, redis_pool)


# ── Error Handling ───────────────────────────────

ERROR_STATUS_CODES: dict[type, int] = {
    ValidationError: 422,
    InsufficientStockError: 409,
    CouponError: 400,
    CartLineNotFoundError: 404,
    ProductNotFoundError: 404,
    OrderNotFoundError: 404,
    OrderPersistenceError: 502,
    DataClientError: 502,
}


def _error_fields(exc: StorefrontError) -> dict:
    if isinstance(exc, ValidationError):
        return {"field": exc.field}
    if isinstance(exc, InsufficientStockError):
        return {"product_id": exc.product_id, "available": exc.available}
    if isinstance(exc, CouponError):
        return {"variant": exc.variant.value, "code": exc.code}
    return {}


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    """StorefrontError のサブクラスを HTTP レスポンスへ変換する。"""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    detail = str(exc)
    if isinstance(exc, DataClientError):
        # 原因はログのみ。利用者には汎用メッセージを返す
        logger.error("Data service error on %s: %s", request.url.path, exc)
        detail = "The store is temporarily unavailable"
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "error_type": type(exc).__name__, **_error_fields(exc)},
    )


# ── Request Models ───────────────────────────────


class AddItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(ge=1, default=1)
    size: str = ""


class SetQuantityRequest(BaseModel):
    quantity: int


class ApplyCouponRequest(BaseModel):
    code: str


class CheckoutRequest(BaseModel):
    name: str
    phone: str
    address: str
    city: str


# ── Catalog / Settings ───────────────────────────


@app.get("/api/shipping-cities")
async def get_shipping_cities():
    """有効な配送先都市の一覧"""
    return await queries.list_shipping_cities(data_client)


# ── Cart ─────────────────────────────────────────


@app.get("/api/carts/{session_id}")
async def get_cart(session_id: str):
    return carts.get(session_id).to_dict()


@app.post("/api/carts/{session_id}/items")
async def add_cart_item(session_id: str, req: AddItemRequest):
    """商品をカートに追加(価格・商品名・配送料はサーバー側で取得)"""
    product = await queries.get_product(data_client, req.product_id)
    cart = carts.get(session_id)
    cart.add(
        CartLine(
            product_id=product.id,
            name=product.name,
            unit_price=product.price,
            quantity=req.quantity,
            size_label=req.size,
            shipping_cost=product.shipping_cost,
        )
    )
    return cart.to_dict()


@app.put("/api/carts/{session_id}/items/{product_id}")
async def set_cart_item_quantity(session_id: str, product_id: str, req: SetQuantityRequest):
    cart = carts.get(session_id)
    cart.set_quantity(product_id, req.quantity)
    return cart.to_dict()


@app.delete("/api/carts/{session_id}/items/{product_id}")
async def remove_cart_item(session_id: str, product_id: str):
    cart = carts.get(session_id)
    cart.remove(product_id)
    return cart.to_dict()


@app.delete("/api/carts/{session_id}")
async def clear_cart(session_id: str):
    cart = carts.get(session_id)
    cart.clear()
    return cart.to_dict()


@app.post("/api/carts/{session_id}/coupon")
async def apply_cart_coupon(session_id: str, req: ApplyCouponRequest):
    """クーポンを検証してカートに適用する(使用回数は注文確定時に加算)"""
    cart = carts.get(session_id)
    applied = await apply_coupon(data_client, req.code, cart.subtotal)
    cart.coupon = applied
    return {"code": applied.code, "discount": float(applied.discount)}


@app.delete("/api/carts/{session_id}/coupon")
async def remove_cart_coupon(session_id: str):
    cart = carts.get(session_id)
    cart.coupon = None
    return cart.to_dict()


@app.get("/api/carts/{session_id}/quote")
async def quote_cart(session_id: str, city: str = ""):
    """料金の見積り(小計・送料・割引・合計)"""
    pricing = await get_orchestrator().quote(carts.get(session_id), city)
    return {k: float(v) for k, v in pricing.model_dump().items()}


# ── Checkout ─────────────────────────────────────


@app.post("/api/carts/{session_id}/checkout")
async def checkout(session_id: str, req: CheckoutRequest):
    """注文を確定する(代金引換)"""
    result = await get_orchestrator().execute(
        carts.get(session_id), req.name, req.phone, req.address, req.city
    )
    payload = result.model_dump(mode="json")
    payload["pricing"] = {k: float(v) for k, v in result.pricing.model_dump().items()}
    return payload


# ── Orders ───────────────────────────────────────


@app.get("/api/orders/{order_number}")
async def track_order(order_number: str):
    """注文番号で注文状況を取得する"""
    return await queries.get_order_by_number(data_client, order_number)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "storefront-service"}
