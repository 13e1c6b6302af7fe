"""
Storefront Service — ドメインモデル

カート行・商品・クーポン・金額内訳など、チェックアウトが扱う値の定義。
金額はすべて Decimal(小数2桁)で保持する。
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, Field, field_validator

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """任意の数値を小数2桁の Decimal に丸める(ROUND_HALF_UP)。"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class OrderStatus(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    PREPARING = "Preparing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


PAYMENT_METHOD_COD = "COD"


def _null_as_default(cls, v, info):
    # null のカラムは既定値として扱う
    if v is None:
        return cls.model_fields[info.field_name].get_default()
    return v


class CartLine(BaseModel):
    product_id: str
    name: str
    unit_price: Decimal
    quantity: int = Field(ge=1)
    size_label: str = ""
    # 商品ごとの配送料(設定されていれば都市別料金より優先)
    shipping_cost: Decimal | None = None

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


class Product(BaseModel):
    id: str
    name: str = ""
    price: Decimal
    stock_quantity: int = Field(ge=0, default=0)
    shipping_cost: Decimal | None = None

    _null_as_default = field_validator("name", "stock_quantity", mode="before")(_null_as_default)


class Coupon(BaseModel):
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    min_order_amount: Decimal = Decimal("0")
    max_uses: int | None = None
    used_count: int = 0
    expires_at: datetime | None = None
    is_active: bool = True

    _null_as_default = field_validator(
        "min_order_amount", "used_count", "is_active", mode="before"
    )(_null_as_default)

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at < now


class AppliedCoupon(BaseModel):
    """カートに適用済みのクーポン(usedCount はまだ増やさない)"""
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    discount: Decimal


class PriceBreakdown(BaseModel):
    subtotal: Decimal
    shipping_cost: Decimal
    discount: Decimal
    total: Decimal
