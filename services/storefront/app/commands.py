"""
Storefront Service — コマンドハンドラ (Write 側)

チェックアウトの各ステップ:
  1. 在庫確認     check_stock            (読み取りのみ・並列)
  2. 注文作成     create_order           (orders → order_items)
  3. 在庫減算     decrement_stock        (ベストエフォート・商品ごと)
  4. クーポン使用 increment_coupon_usage (ベストエフォート)

注意: 各ステップは独立したリクエストで、トランザクションではない。
在庫確認と減算の間に他のチェックアウトが割り込むと売り越しが起こりうる。
"""

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from uuid import uuid4

from .data_client import DataClient
from .errors import DataClientError, InsufficientStockError, OrderPersistenceError
from .models import PAYMENT_METHOD_COD, CartLine, OrderStatus, PriceBreakdown
from .validation import CustomerDetails

logger = logging.getLogger(__name__)

ORDER_NUMBER_PREFIX = "BC"


def generate_order_number(now: datetime | None = None) -> str:
    """BC-<epoch ミリ秒>-<ランダム6桁>。同一ミリ秒の衝突をランダム部で避ける。"""
    now = now or datetime.now(timezone.utc)
    millis = int(now.timestamp() * 1000)
    return f"{ORDER_NUMBER_PREFIX}-{millis}-{uuid4().hex[:6].upper()}"


async def check_stock(client: DataClient, lines: Sequence[CartLine]) -> dict[str, int]:
    """
    在庫確認コマンド

    商品ごとに1回ずつ並列で在庫を読み、カート順に判定する。
    最初に不足した行で InsufficientStockError を送出する(全件の集計はしない)。
    """
    product_ids = list(dict.fromkeys(line.product_id for line in lines))
    results = await asyncio.gather(
        *(
            client.select(
                "products", {"id": pid}, columns="id, stock_quantity", limit=1
            )
            for pid in product_ids
        ),
        return_exceptions=True,
    )

    stock: dict[str, int] = {}
    for pid, result in zip(product_ids, results):
        if isinstance(result, Exception):
            logger.error("Error checking stock for product %s: %r", pid, result)
            raise OrderPersistenceError("stock_check") from result
        if isinstance(result, BaseException):
            raise result
        # 商品が無い・在庫が null の場合は在庫 0 とみなす
        stock[pid] = int(result[0]["stock_quantity"] or 0) if result else 0

    for line in lines:
        available = stock[line.product_id]
        if line.quantity > available:
            raise InsufficientStockError(line.product_id, available, line.name)
    return stock


async def create_order(
    client: DataClient,
    order_number: str,
    customer: CustomerDetails,
    pricing: PriceBreakdown,
    lines: Sequence[CartLine],
    coupon_code: str | None = None,
) -> dict:
    """
    注文作成コマンド

    1. orders に1件(status = Pending, payment_method = COD)
    2. order_items に行をまとめて INSERT(価格・商品名はスナップショット)

    2 が失敗すると注文行の無い注文が残る。ロールバックはしない。
    """
    try:
        order = await client.insert(
            "orders",
            {
                "order_number": order_number,
                "customer_name": customer.name,
                "customer_phone": customer.phone,
                "customer_city": customer.city,
                "customer_address": customer.address,
                "subtotal": pricing.subtotal,
                "shipping_cost": pricing.shipping_cost,
                "discount_amount": pricing.discount,
                "total_amount": pricing.total,
                "coupon_code": coupon_code,
                "status": OrderStatus.PENDING.value,
                "payment_method": PAYMENT_METHOD_COD,
            },
        )
    except DataClientError as e:
        logger.error("Order creation failed for %s: %s", order_number, e)
        raise OrderPersistenceError("order") from e

    items = [
        {
            "order_id": order["id"],
            "product_id": line.product_id,
            "product_name": line.name,
            "product_price": line.unit_price,
            "quantity": line.quantity,
            "subtotal": line.line_total,
        }
        for line in lines
    ]
    try:
        await client.insert_many("order_items", items)
    except DataClientError as e:
        logger.error(
            "Order items creation failed, order %s has no lines: %s", order_number, e
        )
        raise OrderPersistenceError("order_items", order_number) from e

    logger.info("Created order %s with %d lines", order_number, len(items))
    return order


async def decrement_stock_for_line(client: DataClient, line: CartLine) -> bool:
    """在庫を読み直し max(0, 在庫 − 数量) を書き戻す。成功したら True。"""
    try:
        rows = await client.select(
            "products", {"id": line.product_id}, columns="stock_quantity", limit=1
        )
        if not rows:
            logger.warning("Product %s vanished before stock update", line.product_id)
            return False
        new_stock = max(0, int(rows[0]["stock_quantity"] or 0) - line.quantity)
        await client.update("products", {"id": line.product_id}, {"stock_quantity": new_stock})
    except Exception:
        logger.exception("Error updating stock for product %s", line.product_id)
        return False
    return True


async def decrement_stock(client: DataClient, lines: Sequence[CartLine]) -> list[str]:
    """
    在庫減算コマンド(ベストエフォート)

    1商品ずつ順番に実行する。失敗してもログに残して次の行へ進む。
    失敗した product_id の一覧を返す。
    """
    failed = []
    for line in lines:
        if not await decrement_stock_for_line(client, line):
            failed.append(line.product_id)
    return failed


async def increment_coupon_usage(client: DataClient, code: str) -> bool:
    """
    クーポン使用回数の加算(ベストエフォート)

    used_count を読み直して +1 で書き戻す。max_uses との比較はしない。
    """
    try:
        rows = await client.select("coupons", {"code": code}, columns="used_count", limit=1)
        if not rows:
            logger.warning("Coupon %s not found when updating usage", code)
            return False
        await client.update(
            "coupons", {"code": code}, {"used_count": int(rows[0]["used_count"] or 0) + 1}
        )
    except Exception:
        logger.exception("Error updating usage count for coupon %s", code)
        return False
    return True
