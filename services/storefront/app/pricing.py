"""
Storefront Service — 料金計算

I/O を持たない純粋関数のみ。同じ入力には常に同じ内訳を返す。

    subtotal = Σ unit_price × quantity
    shipping = 0                       (subtotal >= 送料無料しきい値)
             | max(商品別配送料)        (商品別配送料を持つ行がある)
             | 都市別配送料 / 既定値     (それ以外)
    total    = subtotal + shipping − discount
"""

from collections.abc import Iterable, Mapping
from decimal import Decimal

from .models import CartLine, DiscountType, PriceBreakdown, to_money

DEFAULT_FREE_SHIPPING_THRESHOLD = Decimal("500")
DEFAULT_FALLBACK_SHIPPING_COST = Decimal("50")


def compute_subtotal(lines: Iterable[CartLine]) -> Decimal:
    return to_money(sum((line.unit_price * line.quantity for line in lines), Decimal("0")))


def compute_shipping(
    lines: Iterable[CartLine],
    subtotal: Decimal,
    city: str,
    free_shipping_threshold: Decimal,
    city_rates: Mapping[str, Decimal] | None = None,
    fallback_shipping_cost: Decimal = DEFAULT_FALLBACK_SHIPPING_COST,
) -> Decimal:
    if not city:
        return to_money(0)
    if subtotal >= free_shipping_threshold:
        return to_money(0)

    overrides = [
        line.shipping_cost
        for line in lines
        if line.shipping_cost is not None and line.shipping_cost > 0
    ]
    if overrides:
        return to_money(max(overrides))

    rate = (city_rates or {}).get(city)
    if rate is None:
        return to_money(fallback_shipping_cost)
    return to_money(rate)


def compute_discount(discount_type: DiscountType, discount_value: Decimal, subtotal: Decimal) -> Decimal:
    """
    percentage: subtotal × value / 100
    fixed:      value(小計を超えても切り詰めない)
    """
    if discount_type == DiscountType.PERCENTAGE:
        return to_money(subtotal * discount_value / 100)
    return to_money(discount_value)


def price(
    lines: Iterable[CartLine],
    city: str,
    free_shipping_threshold: Decimal = DEFAULT_FREE_SHIPPING_THRESHOLD,
    coupon=None,
    city_rates: Mapping[str, Decimal] | None = None,
    fallback_shipping_cost: Decimal = DEFAULT_FALLBACK_SHIPPING_COST,
) -> PriceBreakdown:
    """
    カートの金額内訳を計算する。

    coupon には discount_type / discount_value を持つオブジェクト
    (Coupon または AppliedCoupon)を渡す。
    """
    lines = list(lines)
    subtotal = compute_subtotal(lines)
    shipping = compute_shipping(
        lines,
        subtotal,
        city,
        to_money(free_shipping_threshold),
        city_rates,
        to_money(fallback_shipping_cost),
    )
    discount = to_money(0)
    if coupon is not None:
        discount = compute_discount(coupon.discount_type, coupon.discount_value, subtotal)

    return PriceBreakdown(
        subtotal=subtotal,
        shipping_cost=shipping,
        discount=discount,
        total=to_money(subtotal + shipping - discount),
    )
