"""
Checkout Orchestrator — 注文確定ワークフロー

  ┌─────────────────────────────────────────────────────────┐
  │  1. 入力検証・料金計算                                     │
  │  2. 在庫確認(並列読み取り) ── 不足 → 中断(書き込みなし)    │
  │  3. 注文作成 → 注文行作成    ── 失敗 → 中断(カートは保持)  │
  │  4. 在庫減算(商品ごと・ベストエフォート)                   │
  │  5. クーポン使用回数 +1(適用時のみ・ベストエフォート)       │
  │  6. 注文済みの行をカートから外して確定                     │
  └─────────────────────────────────────────────────────────┘

補償トランザクションは無い。4・5 の失敗はログとステップログに
記録されるだけで、注文は確定のまま残る。
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from . import commands, queries
from .aggregate import CheckoutAttempt, CheckoutState
from .cart import Cart
from .data_client import DataClient
from .errors import (
    DataClientError,
    InsufficientStockError,
    OrderPersistenceError,
    ValidationError,
)
from .events import CheckoutFailed, CouponUsageUpdateFailed, OrderPlaced, StockDecrementFailed
from .models import PriceBreakdown
from .pricing import DEFAULT_FALLBACK_SHIPPING_COST, DEFAULT_FREE_SHIPPING_THRESHOLD, price
from .validation import validate_customer

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


class CheckoutResult(BaseModel):
    order_id: str
    order_number: str
    pricing: PriceBreakdown
    coupon_code: str | None = None
    state: CheckoutState
    stock_failures: list[str] = []
    coupon_usage_updated: bool | None = None
    steps: list[dict]


class CheckoutOrchestrator:
    """注文確定ワークフローのオーケストレーター"""

    def __init__(self, client: DataClient, redis: aioredis.Redis | None = None):
        self.client = client
        self.redis = redis

    async def load_pricing_context(self) -> dict:
        """
        送料無料しきい値・既定送料・都市別送料を読む。
        読み取りに失敗した場合は既定値で続行する。
        """
        context = {
            "free_shipping_threshold": DEFAULT_FREE_SHIPPING_THRESHOLD,
            "fallback_shipping_cost": DEFAULT_FALLBACK_SHIPPING_COST,
            "city_rates": {},
        }
        try:
            context.update(await queries.get_store_settings(self.client))
        except DataClientError as e:
            logger.warning("Using default store settings: %s", e)
        try:
            context["city_rates"] = await queries.get_shipping_rates(self.client)
        except DataClientError as e:
            logger.warning("Using fallback shipping cost for every city: %s", e)
        return context

    async def quote(self, cart: Cart, city: str) -> PriceBreakdown:
        context = await self.load_pricing_context()
        return price(cart.lines, city, coupon=cart.coupon, **context)

    async def execute(
        self,
        cart: Cart,
        name: str,
        phone: str,
        address: str,
        city: str,
    ) -> CheckoutResult:
        """
        チェックアウトを実行する。

        検証・在庫・注文書き込みの失敗は例外として送出し、カートはそのまま残す。

        Raises:
            ValidationError, InsufficientStockError, OrderPersistenceError
        """
        attempt = CheckoutAttempt()
        try:
            return await self._run(attempt, cart, name, phone, address, city)
        except (ValidationError, InsufficientStockError, OrderPersistenceError) as e:
            kind = attempt.fail()
            if attempt.steps and attempt.steps[-1]["status"] == "EXECUTING":
                attempt.fail_step(str(e))
            logger.info("Checkout failed (%s): %s", kind.value, e)
            await self._publish_event(
                CheckoutFailed(
                    reason=kind.value,
                    detail=str(e),
                    order_number=getattr(e, "order_number", None),
                    timestamp=datetime.now(timezone.utc),
                )
            )
            raise

    async def _run(
        self,
        attempt: CheckoutAttempt,
        cart: Cart,
        name: str,
        phone: str,
        address: str,
        city: str,
    ) -> CheckoutResult:
        lines = cart.lines
        coupon = cart.coupon

        # ── Step: 入力検証・料金計算 ─────────────────
        attempt.advance(CheckoutState.VALIDATING)
        attempt.begin_step("ValidateInput")
        if not lines:
            raise ValidationError("cart", "Cart is empty")
        customer = validate_customer(name, phone, address, city)
        attempt.complete_step()

        attempt.begin_step("PriceCart")
        context = await self.load_pricing_context()
        pricing = price(lines, customer.city, coupon=coupon, **context)
        attempt.complete_step()

        # ── Step: 在庫確認 ──────────────────────────
        attempt.advance(CheckoutState.CHECKING_STOCK)
        attempt.begin_step("CheckStock")
        await commands.check_stock(self.client, lines)
        attempt.complete_step()

        # ── Step: 注文作成 ──────────────────────────
        attempt.advance(CheckoutState.WRITING_ORDER)
        order_number = commands.generate_order_number()
        attempt.order_number = order_number
        attempt.begin_step("CreateOrder", order_number=order_number)
        order = await commands.create_order(
            self.client,
            order_number,
            customer,
            pricing,
            lines,
            coupon.code if coupon else None,
        )
        attempt.complete_step()

        # ── Step: 在庫減算(ベストエフォート) ────────
        attempt.advance(CheckoutState.DECREMENTING_STOCK)
        attempt.begin_step("DecrementStock")
        stock_failures = await commands.decrement_stock(self.client, lines)
        if stock_failures:
            attempt.fail_step(f"stock update failed for {', '.join(stock_failures)}")
            await self._publish_event(
                StockDecrementFailed(
                    order_number=order_number,
                    product_ids=stock_failures,
                    timestamp=datetime.now(timezone.utc),
                )
            )
        else:
            attempt.complete_step()

        # ── Step: クーポン使用回数(ベストエフォート) ─
        coupon_usage_updated = None
        if coupon is not None:
            attempt.advance(CheckoutState.UPDATING_COUPON)
            attempt.begin_step("IncrementCouponUsage", coupon_code=coupon.code)
            coupon_usage_updated = await commands.increment_coupon_usage(
                self.client, coupon.code
            )
            if coupon_usage_updated:
                attempt.complete_step()
            else:
                attempt.fail_step("coupon usage update failed")
                await self._publish_event(
                    CouponUsageUpdateFailed(
                        order_number=order_number,
                        coupon_code=coupon.code,
                        timestamp=datetime.now(timezone.utc),
                    )
                )
        else:
            attempt.skip_step("IncrementCouponUsage")

        # ── Step: 注文済みの行をカートから外して確定 ───
        cart.discard_ordered(lines, coupon)
        attempt.advance(CheckoutState.CART_CLEARED)
        attempt.advance(CheckoutState.CONFIRMED)

        await self._publish_event(
            OrderPlaced(
                order_id=str(order["id"]),
                order_number=order_number,
                customer_name=customer.name,
                customer_city=customer.city,
                subtotal=float(pricing.subtotal),
                shipping_cost=float(pricing.shipping_cost),
                discount_amount=float(pricing.discount),
                total_amount=float(pricing.total),
                coupon_code=coupon.code if coupon else None,
                item_count=sum(line.quantity for line in lines),
                timestamp=datetime.now(timezone.utc),
            )
        )
        logger.info("Order %s confirmed (total %s)", order_number, pricing.total)

        return CheckoutResult(
            order_id=str(order["id"]),
            order_number=order_number,
            pricing=pricing,
            coupon_code=coupon.code if coupon else None,
            state=attempt.state,
            stock_failures=stock_failures,
            coupon_usage_updated=coupon_usage_updated,
            steps=attempt.steps,
        )

    async def _publish_event(self, event: BaseModel) -> None:
        """イベントを Redis に発行する。発行の失敗はチェックアウトに影響させない。"""
        if self.redis is None:
            return
        try:
            await self.redis.publish(
                ORDER_EVENTS_CHANNEL,
                json.dumps(
                    {
                        "event_type": type(event).__name__,
                        "data": event.model_dump(mode="json"),
                    },
                    default=str,
                ),
            )
        except (RedisError, OSError):
            logger.exception("Failed to publish %s", type(event).__name__)
