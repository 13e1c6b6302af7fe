"""
Storefront Service — クエリハンドラ (Read 側)

データサービスからの読み取り専用操作。
ストア設定・配送先一覧・商品・クーポン・注文追跡を扱う。
"""

import logging
from decimal import Decimal, InvalidOperation

from .data_client import DataClient
from .errors import OrderNotFoundError, ProductNotFoundError
from .models import Coupon, Product, to_money
from .pricing import DEFAULT_FALLBACK_SHIPPING_COST, DEFAULT_FREE_SHIPPING_THRESHOLD

logger = logging.getLogger(__name__)


async def get_store_settings(client: DataClient) -> dict:
    """
    settings テーブル(key / value 行)から料金関連の設定を読む。
    値が無い・解釈できない場合は既定値を使う。
    """
    rows = await client.select("settings", columns="key, value")
    values = {row["key"]: row["value"] for row in rows}

    def _money(key: str, default: Decimal) -> Decimal:
        raw = values.get(key)
        if raw is None:
            return default
        try:
            return to_money(raw)
        except (InvalidOperation, ValueError):
            logger.warning("Ignoring malformed setting %s=%r", key, raw)
            return default

    return {
        "free_shipping_threshold": _money(
            "free_shipping_threshold", DEFAULT_FREE_SHIPPING_THRESHOLD
        ),
        "fallback_shipping_cost": _money(
            "fallback_shipping_cost", DEFAULT_FALLBACK_SHIPPING_COST
        ),
    }


async def list_shipping_cities(client: DataClient) -> list[dict]:
    """有効な配送先都市(都市名順)"""
    rows = await client.select(
        "shipping_costs", {"is_active": True}, order_by="city_name"
    )
    return [
        {"city_name": row["city_name"], "shipping_cost": float(row["shipping_cost"])}
        for row in rows
    ]


async def get_shipping_rates(client: DataClient) -> dict[str, Decimal]:
    """料金計算用の {都市名: 配送料}"""
    rows = await client.select(
        "shipping_costs", {"is_active": True}, columns="city_name, shipping_cost"
    )
    return {row["city_name"]: to_money(row["shipping_cost"]) for row in rows}


async def get_product(client: DataClient, product_id: str) -> Product:
    rows = await client.select(
        "products",
        {"id": product_id},
        columns="id, name, price, stock_quantity, shipping_cost",
        limit=1,
    )
    if not rows:
        raise ProductNotFoundError(product_id)
    return Product(**{**rows[0], "id": str(rows[0]["id"])})


async def find_coupon(client: DataClient, code: str) -> Coupon | None:
    rows = await client.select("coupons", {"code": code}, limit=1)
    if not rows:
        return None
    return Coupon(**rows[0])


async def get_order_by_number(client: DataClient, order_number: str) -> dict:
    """
    注文追跡: 注文番号から注文と注文行を取得する。

    Raises:
        OrderNotFoundError: 該当する注文が無い。
    """
    rows = await client.select("orders", {"order_number": order_number.strip()}, limit=1)
    if not rows:
        raise OrderNotFoundError(order_number)
    order = rows[0]
    items = await client.select("order_items", {"order_id": order["id"]})
    return {
        "id": str(order["id"]),
        "order_number": order["order_number"],
        "customer_name": order["customer_name"],
        "customer_city": order["customer_city"],
        "subtotal": float(order["subtotal"]),
        "shipping_cost": float(order["shipping_cost"]),
        "discount_amount": float(order["discount_amount"]),
        "total_amount": float(order["total_amount"]),
        "coupon_code": order.get("coupon_code"),
        "status": order["status"],
        "payment_method": order["payment_method"],
        "items": [
            {
                "product_id": str(item["product_id"]),
                "product_name": item["product_name"],
                "product_price": float(item["product_price"]),
                "quantity": item["quantity"],
                "subtotal": float(item["subtotal"]),
            }
            for item in items
        ],
    }
