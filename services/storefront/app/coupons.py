"""
Storefront Service — クーポン適用

クーポンコードを検証して割引額を計算する。ここではカートに
「適用済み」として記録するだけで、used_count は注文確定時まで更新しない。

検証順: NotFound → Inactive → Expired → UsageLimitReached → BelowMinimumOrder
"""

from datetime import datetime, timezone
from decimal import Decimal

from . import queries
from .data_client import DataClient
from .errors import CouponError, CouponErrorKind
from .models import AppliedCoupon, Coupon
from .pricing import compute_discount


def normalize_code(code: str) -> str:
    return code.strip().upper()


def check_coupon(coupon: Coupon | None, code: str, subtotal: Decimal, now: datetime) -> Coupon:
    if coupon is None:
        raise CouponError(CouponErrorKind.NOT_FOUND, code)
    if not coupon.is_active:
        raise CouponError(CouponErrorKind.INACTIVE, code)
    if coupon.is_expired(now):
        raise CouponError(CouponErrorKind.EXPIRED, code)
    if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
        raise CouponError(CouponErrorKind.USAGE_LIMIT_REACHED, code)
    if subtotal < coupon.min_order_amount:
        raise CouponError(
            CouponErrorKind.BELOW_MINIMUM_ORDER,
            code,
            f"minimum order: {coupon.min_order_amount}",
        )
    return coupon


async def apply_coupon(
    client: DataClient,
    code: str,
    subtotal: Decimal,
    now: datetime | None = None,
) -> AppliedCoupon:
    """
    クーポンを検証し、適用結果(割引額つき)を返す。

    Raises:
        CouponError: 適用できない理由(variant)つき。
    """
    code = normalize_code(code)
    now = now or datetime.now(timezone.utc)
    coupon = check_coupon(await queries.find_coupon(client, code), code, subtotal, now)
    return AppliedCoupon(
        code=coupon.code,
        discount_type=coupon.discount_type,
        discount_value=coupon.discount_value,
        discount=compute_discount(coupon.discount_type, coupon.discount_value, subtotal),
    )
