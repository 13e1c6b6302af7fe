"""
Storefront Service — 例外定義

チェックアウトで発生するエラーの分類。
API 層ではこれらを HTTP ステータスへ変換する (main.py の exception_handler)。
"""

from enum import Enum


class StorefrontError(Exception):
    """すべてのストアフロント例外の基底クラス"""


class ValidationError(StorefrontError):
    """顧客入力が不正(最初に見つかった不正フィールドのみ)"""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class InsufficientStockError(StorefrontError):
    """在庫不足 — 書き込み前にチェックアウトを中断する"""

    def __init__(self, product_id: str, available: int, product_name: str = ""):
        self.product_id = product_id
        self.available = available
        self.product_name = product_name
        label = product_name or product_id
        super().__init__(f"Insufficient stock for {label}: {available} available")


class CouponErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    INACTIVE = "Inactive"
    EXPIRED = "Expired"
    USAGE_LIMIT_REACHED = "UsageLimitReached"
    BELOW_MINIMUM_ORDER = "BelowMinimumOrder"


_COUPON_MESSAGES = {
    CouponErrorKind.NOT_FOUND: "Invalid coupon code",
    CouponErrorKind.INACTIVE: "This coupon is no longer active",
    CouponErrorKind.EXPIRED: "This coupon has expired",
    CouponErrorKind.USAGE_LIMIT_REACHED: "This coupon has reached its usage limit",
    CouponErrorKind.BELOW_MINIMUM_ORDER: "Order amount is below the coupon minimum",
}


class CouponError(StorefrontError):
    """クーポン適用失敗(チェックアウト自体は止めない)"""

    def __init__(self, variant: CouponErrorKind, code: str, detail: str | None = None):
        self.variant = variant
        self.code = code
        msg = _COUPON_MESSAGES[variant]
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class OrderPersistenceError(StorefrontError):
    """
    注文の書き込みに失敗した。

    ユーザーには汎用メッセージのみ返し、原因はログにだけ残す。
    order_number が入っている場合は注文行だけが失敗した(孤立した注文が残る)。
    """

    def __init__(self, stage: str, order_number: str | None = None):
        self.stage = stage
        self.order_number = order_number
        super().__init__("An error occurred while placing the order")


class CartLineNotFoundError(StorefrontError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Cart line not found: {product_id}")


class ProductNotFoundError(StorefrontError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class OrderNotFoundError(StorefrontError):
    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(f"No order found with number {order_number}")


class DataClientError(StorefrontError):
    """データサービスへのリクエストが失敗した"""

    def __init__(self, operation: str, table: str, reason: str, status_code: int | None = None):
        self.operation = operation
        self.table = table
        self.reason = reason
        self.status_code = status_code
        msg = f"{operation} on {table} failed: {reason}"
        if status_code is not None:
            msg = f"{msg} (HTTP {status_code})"
        super().__init__(msg)
