"""Pytest fixtures for storefront tests."""

import asyncio
import json
from decimal import Decimal
from uuid import uuid4

import pytest

from app.cart import Cart
from app.errors import DataClientError
from app.models import CartLine

WRITE_OPERATIONS = ("insert", "insert_many", "update", "delete")


class FakeDataClient:
    """In-memory stand-in for the data service, with failure injection."""

    def __init__(self, tables: dict[str, list[dict]] | None = None):
        self.tables = {name: [dict(r) for r in rows] for name, rows in (tables or {}).items()}
        self.calls: list[tuple[str, str, dict]] = []
        self._failures: list[tuple[str, str, dict | None, Exception | None]] = []

    def fail(
        self, operation: str, table: str, match: dict | None = None, error: Exception | None = None
    ) -> None:
        self._failures.append((operation, table, match, error))

    def writes(self, table: str) -> list[tuple[str, str, dict]]:
        return [c for c in self.calls if c[0] in WRITE_OPERATIONS and c[1] == table]

    def reads(self, table: str) -> list[tuple[str, str, dict]]:
        return [c for c in self.calls if c[0] == "select" and c[1] == table]

    def row(self, table: str, **filters) -> dict | None:
        rows = [r for r in self.tables.get(table, []) if self._match(r, filters)]
        return rows[0] if rows else None

    @staticmethod
    def _match(row: dict, filters: dict | None) -> bool:
        return all(row.get(k) == v for k, v in (filters or {}).items())

    async def _enter(self, operation: str, table: str, filters: dict | None) -> None:
        self.calls.append((operation, table, dict(filters or {})))
        # yield to other coroutines like a real network round-trip would
        await asyncio.sleep(0)
        for op, tbl, match, error in self._failures:
            if op == operation and tbl == table and (
                match is None or all((filters or {}).get(k) == v for k, v in match.items())
            ):
                raise error or DataClientError(operation, table, "injected failure", 500)

    async def select(self, table, filters=None, columns="*", order_by=None, limit=None):
        await self._enter("select", table, filters)
        rows = [dict(r) for r in self.tables.get(table, []) if self._match(r, filters)]
        if order_by:
            rows.sort(key=lambda r: r[order_by])
        if limit is not None:
            rows = rows[:limit]
        if columns.strip() != "*":
            keys = [c.strip() for c in columns.split(",")]
            rows = [{k: r.get(k) for k in keys} for r in rows]
        return rows

    async def insert(self, table, record):
        [row] = await self._insert(table, [record], "insert")
        return row

    async def insert_many(self, table, records):
        return await self._insert(table, records, "insert_many")

    async def _insert(self, table, records, operation):
        await self._enter(operation, table, None)
        inserted = []
        for record in records:
            row = dict(record)
            row.setdefault("id", str(uuid4()))
            self.tables.setdefault(table, []).append(row)
            inserted.append(dict(row))
        return inserted

    async def update(self, table, filters, patch):
        await self._enter("update", table, filters)
        updated = None
        for row in self.tables.get(table, []):
            if self._match(row, filters):
                row.update(patch)
                updated = updated or dict(row)
        return updated

    async def delete(self, table, filters):
        await self._enter("delete", table, filters)
        self.tables[table] = [r for r in self.tables.get(table, []) if not self._match(r, filters)]

    async def aclose(self):
        pass


class FakeRedis:
    def __init__(self):
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 1

    def event_types(self) -> list[str]:
        return [payload["event_type"] for _, payload in self.published]


def make_line(product_id="P1", name="Argan Oil Serum", price=100, quantity=1, shipping_cost=None):
    return CartLine(
        product_id=product_id,
        name=name,
        unit_price=Decimal(str(price)),
        quantity=quantity,
        size_label="50ml",
        shipping_cost=Decimal(str(shipping_cost)) if shipping_cost is not None else None,
    )


def seed_tables() -> dict[str, list[dict]]:
    return {
        "products": [
            {"id": "P1", "name": "Argan Oil Serum", "price": 100, "stock_quantity": 10, "shipping_cost": None},
            {"id": "P2", "name": "Rose Water Toner", "price": 45, "stock_quantity": 3, "shipping_cost": None},
            {"id": "P3", "name": "Ghassoul Clay Mask", "price": 60, "stock_quantity": 5, "shipping_cost": 25},
        ],
        "shipping_costs": [
            {"city_name": "Casablanca", "shipping_cost": 30, "is_active": True},
            {"city_name": "Rabat", "shipping_cost": 35, "is_active": True},
            {"city_name": "Oujda", "shipping_cost": 50, "is_active": False},
        ],
        "settings": [
            {"key": "free_shipping_threshold", "value": "500"},
        ],
        "coupons": [
            {
                "code": "WELCOME10",
                "discount_type": "percentage",
                "discount_value": 10,
                "min_order_amount": 100,
                "max_uses": None,
                "used_count": 0,
                "expires_at": None,
                "is_active": True,
            },
            {
                "code": "FLAT50",
                "discount_type": "fixed",
                "discount_value": 50,
                "min_order_amount": 0,
                "max_uses": 5,
                "used_count": 2,
                "expires_at": None,
                "is_active": True,
            },
        ],
        "orders": [],
        "order_items": [],
    }


@pytest.fixture
def store():
    return FakeDataClient(seed_tables())


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cart():
    c = Cart()
    c.add(make_line("P1", price=100, quantity=2))
    return c


CUSTOMER = {
    "name": "Salma Bennani",
    "phone": "0612345678",
    "address": "12 Rue des Orangers, Maarif",
    "city": "Casablanca",
}
