"""
Storefront Service — カートストア

ブラウザセッションごとのプロセス内カート。product_id をキーにした
マッピングで、同じ商品を追加すると行を増やさず数量を加算する。
永続化はしない(再起動で消える)。
"""

from decimal import Decimal

from .errors import CartLineNotFoundError
from .models import AppliedCoupon, CartLine, to_money


class Cart:
    def __init__(self) -> None:
        self._lines: dict[str, CartLine] = {}
        self.coupon: AppliedCoupon | None = None

    @property
    def lines(self) -> list[CartLine]:
        """現在の行のスナップショット(コピー)"""
        return [line.model_copy() for line in self._lines.values()]

    @property
    def subtotal(self) -> Decimal:
        return to_money(sum((line.line_total for line in self._lines.values()), Decimal("0")))

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    def is_empty(self) -> bool:
        return not self._lines

    def get(self, product_id: str) -> CartLine | None:
        return self._lines.get(product_id)

    def add(self, line: CartLine) -> CartLine:
        existing = self._lines.get(line.product_id)
        if existing is not None:
            existing.quantity += line.quantity
            return existing
        self._lines[line.product_id] = line.model_copy()
        return self._lines[line.product_id]

    def remove(self, product_id: str) -> None:
        if product_id not in self._lines:
            raise CartLineNotFoundError(product_id)
        del self._lines[product_id]

    def set_quantity(self, product_id: str, quantity: int) -> None:
        """数量を設定する。0 以下なら行を削除する。"""
        line = self._lines.get(product_id)
        if line is None:
            raise CartLineNotFoundError(product_id)
        if quantity <= 0:
            del self._lines[product_id]
            return
        line.quantity = quantity

    def clear(self) -> None:
        self._lines.clear()
        self.coupon = None

    def discard_ordered(self, ordered: list[CartLine], coupon: AppliedCoupon | None = None) -> None:
        """
        注文済みの行だけをカートから取り除く。

        チェックアウト中に追加された数量・行は残す。
        クーポンは注文に使ったものが今も適用されていれば外す。
        """
        for line in ordered:
            current = self._lines.get(line.product_id)
            if current is None:
                continue
            remaining = current.quantity - line.quantity
            if remaining > 0:
                current.quantity = remaining
            else:
                del self._lines[line.product_id]
        if coupon is not None and self.coupon is coupon:
            self.coupon = None

    def to_dict(self) -> dict:
        coupon = None
        if self.coupon is not None:
            coupon = {
                "code": self.coupon.code,
                "discount_type": self.coupon.discount_type.value,
                "discount_value": float(self.coupon.discount_value),
            }
        return {
            "items": [
                {
                    "product_id": line.product_id,
                    "name": line.name,
                    "unit_price": float(line.unit_price),
                    "quantity": line.quantity,
                    "size_label": line.size_label,
                    "shipping_cost": float(line.shipping_cost)
                    if line.shipping_cost is not None
                    else None,
                    "line_total": float(line.line_total),
                }
                for line in self._lines.values()
            ],
            "subtotal": float(self.subtotal),
            "item_count": self.item_count,
            "coupon": coupon,
        }


class CartSessions:
    """セッション ID → Cart。初回アクセス時に空のカートを作る。"""

    def __init__(self) -> None:
        self._carts: dict[str, Cart] = {}

    def get(self, session_id: str) -> Cart:
        cart = self._carts.get(session_id)
        if cart is None:
            cart = Cart()
            self._carts[session_id] = cart
        return cart

    def drop(self, session_id: str) -> None:
        self._carts.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._carts)
