"""
Storefront Service — イベント定義

チェックアウトの結果として order_events チャネルへ発行するイベント。
イベントは過去形で命名し、不変として扱う。
"""

from datetime import datetime

from pydantic import BaseModel


class OrderPlaced(BaseModel):
    """注文が確定された"""
    order_id: str
    order_number: str
    customer_name: str
    customer_city: str
    subtotal: float
    shipping_cost: float
    discount_amount: float
    total_amount: float
    coupon_code: str | None = None
    item_count: int
    timestamp: datetime


class StockDecrementFailed(BaseModel):
    """注文は確定したが、一部商品の在庫減算に失敗した"""
    order_number: str
    product_ids: list[str]
    timestamp: datetime


class CouponUsageUpdateFailed(BaseModel):
    """注文は確定したが、クーポン使用回数の更新に失敗した"""
    order_number: str
    coupon_code: str
    timestamp: datetime


class CheckoutFailed(BaseModel):
    """チェックアウトが中断された(validation / stock / persistence)"""
    reason: str
    detail: str
    order_number: str | None = None
    timestamp: datetime
