"""Tests for the checkout write-side commands."""

import asyncio
import re
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app import commands
from app.errors import InsufficientStockError, OrderPersistenceError
from app.models import PriceBreakdown
from app.validation import validate_customer

from conftest import CUSTOMER, make_line

PRICING = PriceBreakdown(
    subtotal=Decimal("200"),
    shipping_cost=Decimal("30"),
    discount=Decimal("0"),
    total=Decimal("230"),
)


class TestGenerateOrderNumber:
    def test_format(self):
        number = commands.generate_order_number()
        assert re.match(r"^BC-\d{13}-[0-9A-F]{6}$", number)

    def test_derived_from_timestamp(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        number = commands.generate_order_number(now)
        assert number.startswith(f"BC-{int(now.timestamp() * 1000)}-")

    def test_same_instant_gives_distinct_numbers(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        numbers = {commands.generate_order_number(now) for _ in range(50)}
        assert len(numbers) == 50


class TestCheckStock:
    def test_sufficient_stock(self, store):
        stock = asyncio.run(commands.check_stock(store, [make_line("P1", quantity=10)]))
        assert stock == {"P1": 10}

    def test_quantity_above_stock_raises(self, store):
        with pytest.raises(InsufficientStockError) as exc_info:
            asyncio.run(commands.check_stock(store, [make_line("P2", name="Rose Water Toner", quantity=4)]))
        assert exc_info.value.product_id == "P2"
        assert exc_info.value.available == 3
        assert "Rose Water Toner" in str(exc_info.value)

    def test_reports_first_failing_line_in_cart_order(self, store):
        lines = [
            make_line("P1", quantity=1),
            make_line("P3", quantity=9),
            make_line("P2", quantity=9),
        ]
        with pytest.raises(InsufficientStockError) as exc_info:
            asyncio.run(commands.check_stock(store, lines))
        assert exc_info.value.product_id == "P3"

    def test_one_read_per_distinct_product(self, store):
        lines = [make_line("P1"), make_line("P2"), make_line("P1")]
        asyncio.run(commands.check_stock(store, lines))
        assert sorted(c[2]["id"] for c in store.reads("products")) == ["P1", "P2"]

    def test_unknown_product_has_no_stock(self, store):
        with pytest.raises(InsufficientStockError) as exc_info:
            asyncio.run(commands.check_stock(store, [make_line("P404")]))
        assert exc_info.value.available == 0

    def test_read_failure_is_a_persistence_error(self, store):
        store.fail("select", "products")
        with pytest.raises(OrderPersistenceError) as exc_info:
            asyncio.run(commands.check_stock(store, [make_line("P1")]))
        assert exc_info.value.stage == "stock_check"

    def test_null_stock_counts_as_zero(self, store):
        store.row("products", id="P1")["stock_quantity"] = None
        with pytest.raises(InsufficientStockError) as exc_info:
            asyncio.run(commands.check_stock(store, [make_line("P1")]))
        assert exc_info.value.available == 0

    def test_unexpected_read_error_is_a_persistence_error(self, store):
        store.fail("select", "products", error=RuntimeError("decode error"))
        with pytest.raises(OrderPersistenceError) as exc_info:
            asyncio.run(commands.check_stock(store, [make_line("P1")]))
        assert exc_info.value.stage == "stock_check"

    def test_is_read_only(self, store):
        asyncio.run(commands.check_stock(store, [make_line("P1")]))
        assert store.writes("products") == []


class TestCreateOrder:
    def _create(self, store, lines, coupon_code=None):
        customer = validate_customer(**CUSTOMER)
        return asyncio.run(
            commands.create_order(store, "BC-1", customer, PRICING, lines, coupon_code)
        )

    def test_writes_order_then_lines(self, store):
        order = self._create(store, [make_line("P1", price=100, quantity=2)])
        assert [c[:2] for c in store.calls] == [("insert", "orders"), ("insert_many", "order_items")]

        saved = store.row("orders", order_number="BC-1")
        assert saved["id"] == order["id"]
        assert saved["status"] == "Pending"
        assert saved["payment_method"] == "COD"
        assert saved["customer_phone"] == "0612345678"
        assert saved["total_amount"] == Decimal("230")
        assert saved["coupon_code"] is None

        [item] = store.tables["order_items"]
        assert item["order_id"] == order["id"]
        assert item["product_name"] == "Argan Oil Serum"
        assert item["product_price"] == Decimal("100")
        assert item["quantity"] == 2
        assert item["subtotal"] == Decimal("200")

    def test_records_coupon_code(self, store):
        self._create(store, [make_line("P1")], coupon_code="WELCOME10")
        assert store.row("orders", order_number="BC-1")["coupon_code"] == "WELCOME10"

    def test_order_write_failure(self, store):
        store.fail("insert", "orders")
        with pytest.raises(OrderPersistenceError) as exc_info:
            self._create(store, [make_line("P1")])
        assert exc_info.value.stage == "order"
        assert store.writes("order_items") == []

    def test_line_write_failure_leaves_orphaned_order(self, store):
        store.fail("insert_many", "order_items")
        with pytest.raises(OrderPersistenceError) as exc_info:
            self._create(store, [make_line("P1")])
        assert exc_info.value.stage == "order_items"
        assert exc_info.value.order_number == "BC-1"
        assert store.row("orders", order_number="BC-1") is not None
        assert store.tables["order_items"] == []


class TestDecrementStock:
    def test_decrements_each_line(self, store):
        lines = [make_line("P1", quantity=2), make_line("P2", quantity=3)]
        failed = asyncio.run(commands.decrement_stock(store, lines))
        assert failed == []
        assert store.row("products", id="P1")["stock_quantity"] == 8
        assert store.row("products", id="P2")["stock_quantity"] == 0

    def test_never_goes_negative(self, store):
        asyncio.run(commands.decrement_stock(store, [make_line("P2", quantity=7)]))
        assert store.row("products", id="P2")["stock_quantity"] == 0

    def test_rereads_stock_before_writing(self, store):
        asyncio.run(commands.decrement_stock(store, [make_line("P1", quantity=1)]))
        assert [c[:2] for c in store.calls] == [("select", "products"), ("update", "products")]

    def test_failure_does_not_stop_remaining_lines(self, store):
        store.fail("update", "products", match={"id": "P1"})
        lines = [make_line("P1", quantity=1), make_line("P2", quantity=1)]
        failed = asyncio.run(commands.decrement_stock(store, lines))
        assert failed == ["P1"]
        assert store.row("products", id="P1")["stock_quantity"] == 10
        assert store.row("products", id="P2")["stock_quantity"] == 2

    def test_missing_product_is_reported(self, store):
        failed = asyncio.run(commands.decrement_stock(store, [make_line("P404")]))
        assert failed == ["P404"]

    def test_null_stock_is_treated_as_zero(self, store):
        store.row("products", id="P1")["stock_quantity"] = None
        failed = asyncio.run(commands.decrement_stock(store, [make_line("P1", quantity=2)]))
        assert failed == []
        assert store.row("products", id="P1")["stock_quantity"] == 0

    def test_unexpected_error_is_contained(self, store):
        store.fail("update", "products", match={"id": "P1"}, error=RuntimeError("driver bug"))
        lines = [make_line("P1", quantity=1), make_line("P2", quantity=1)]
        failed = asyncio.run(commands.decrement_stock(store, lines))
        assert failed == ["P1"]
        assert store.row("products", id="P2")["stock_quantity"] == 2


class TestIncrementCouponUsage:
    def test_increments(self, store):
        assert asyncio.run(commands.increment_coupon_usage(store, "FLAT50")) is True
        assert store.row("coupons", code="FLAT50")["used_count"] == 3

    def test_does_not_enforce_max_uses(self, store):
        store.row("coupons", code="FLAT50")["used_count"] = 5
        assert asyncio.run(commands.increment_coupon_usage(store, "FLAT50")) is True
        assert store.row("coupons", code="FLAT50")["used_count"] == 6

    def test_update_failure_returns_false(self, store):
        store.fail("update", "coupons")
        assert asyncio.run(commands.increment_coupon_usage(store, "FLAT50")) is False
        assert store.row("coupons", code="FLAT50")["used_count"] == 2

    def test_unknown_coupon_returns_false(self, store):
        assert asyncio.run(commands.increment_coupon_usage(store, "NOPE")) is False

    def test_null_usage_count_is_treated_as_zero(self, store):
        store.row("coupons", code="WELCOME10")["used_count"] = None
        assert asyncio.run(commands.increment_coupon_usage(store, "WELCOME10")) is True
        assert store.row("coupons", code="WELCOME10")["used_count"] == 1

    def test_unexpected_error_returns_false(self, store):
        store.fail("update", "coupons", error=TypeError("bad payload"))
        assert asyncio.run(commands.increment_coupon_usage(store, "FLAT50")) is False
