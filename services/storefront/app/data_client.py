"""
Storefront Service — データサービスクライアント

永続化はすべて外部のデータサービスに委譲する。チェックアウトは
select / insert / update / delete の4操作だけを使う。

  RestDataClient: PostgREST 形式の REST API (httpx)
  SqlDataClient:  SQLAlchemy (async) + 生 SQL

読み取り(select)のみ、接続エラー時に固定バックオフで1回だけ再試行する。
書き込みは再試行しない。
"""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol, TypeVar
from uuid import uuid4

import httpx
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .errors import DataClientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_READ_RETRY_BACKOFF = 0.5

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DataClient(Protocol):
    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        columns: str = "*",
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict]: ...

    async def insert(self, table: str, record: dict) -> dict: ...

    async def insert_many(self, table: str, records: list[dict]) -> list[dict]: ...

    async def update(self, table: str, filters: dict[str, Any], patch: dict) -> dict | None: ...

    async def delete(self, table: str, filters: dict[str, Any]) -> None: ...

    async def aclose(self) -> None: ...


async def _with_read_retry(
    operation: str,
    table: str,
    call: Callable[[], Awaitable[T]],
    retryable: tuple[type[Exception], ...],
    backoff: float,
) -> T:
    try:
        return await call()
    except retryable as e:
        logger.warning(
            "%s on %s failed (%s), retrying in %.2fs", operation, table, e, backoff
        )
    await asyncio.sleep(backoff)
    try:
        return await call()
    except retryable as e:
        raise DataClientError(operation, table, str(e)) from e


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return name


def _column_list(columns: str) -> str:
    if columns.strip() == "*":
        return "*"
    return ", ".join(_check_identifier(c.strip()) for c in columns.split(","))


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


# ── REST (PostgREST) ─────────────────────────────


def _rest_filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{'true' if value else 'false'}"
    return f"eq.{_jsonable(value)}"


class RestDataClient:
    """
    PostgREST 互換の REST API クライアント。

    GET    /rest/v1/<table>?select=...&col=eq.value
    POST   /rest/v1/<table>           (Prefer: return=representation)
    PATCH  /rest/v1/<table>?col=eq.value
    DELETE /rest/v1/<table>?col=eq.value
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        read_retry_backoff: float = DEFAULT_READ_RETRY_BACKOFF,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.read_retry_backoff = read_retry_backoff
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            headers={"apikey": api_key, "Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _filter_params(filters: dict[str, Any] | None) -> dict[str, str]:
        return {
            _check_identifier(col): _rest_filter_value(value)
            for col, value in (filters or {}).items()
        }

    async def _send(self, operation: str, table: str, method: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, f"/{_check_identifier(table)}", **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DataClientError(
                operation, table, e.response.text, e.response.status_code
            ) from e
        return resp

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        columns: str = "*",
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        params = {"select": _column_list(columns).replace(" ", "")}
        params.update(self._filter_params(filters))
        if order_by:
            params["order"] = f"{_check_identifier(order_by)}.asc"
        if limit is not None:
            params["limit"] = str(limit)

        async def _call() -> list[dict]:
            resp = await self._send("select", table, "GET", params=params)
            return resp.json()

        return await _with_read_retry(
            "select", table, _call, (httpx.TransportError,), self.read_retry_backoff
        )

    async def insert(self, table: str, record: dict) -> dict:
        rows = await self.insert_many(table, [record])
        return rows[0] if rows else dict(record)

    async def insert_many(self, table: str, records: list[dict]) -> list[dict]:
        payload = [{k: _jsonable(v) for k, v in r.items()} for r in records]
        try:
            resp = await self._send(
                "insert",
                table,
                "POST",
                json=payload,
                headers={"Prefer": "return=representation"},
            )
        except httpx.TransportError as e:
            raise DataClientError("insert", table, str(e)) from e
        return resp.json()

    async def update(self, table: str, filters: dict[str, Any], patch: dict) -> dict | None:
        try:
            resp = await self._send(
                "update",
                table,
                "PATCH",
                params=self._filter_params(filters),
                json={k: _jsonable(v) for k, v in patch.items()},
                headers={"Prefer": "return=representation"},
            )
        except httpx.TransportError as e:
            raise DataClientError("update", table, str(e)) from e
        rows = resp.json()
        return rows[0] if rows else None

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        try:
            await self._send("delete", table, "DELETE", params=self._filter_params(filters))
        except httpx.TransportError as e:
            raise DataClientError("delete", table, str(e)) from e


# ── SQL (SQLAlchemy async) ───────────────────────


class SqlDataClient:
    """
    SQLAlchemy の非同期エンジンで同じ4操作を提供する。

    テーブル名・カラム名は識別子として検証し、値はすべてバインドパラメータで渡す。
    insert で id が無い場合は UUID を採番し、書き込んだ行をそのまま返す。
    update は RETURNING で更新後の行を返す。書き込み後の再読み込みはしない。
    """

    def __init__(
        self,
        database_url: str | None = None,
        engine: AsyncEngine | None = None,
        read_retry_backoff: float = DEFAULT_READ_RETRY_BACKOFF,
    ):
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required")
            engine = create_async_engine(database_url, echo=False)
        self.engine = engine
        self.async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        self.read_retry_backoff = read_retry_backoff

    async def aclose(self) -> None:
        await self.engine.dispose()

    def _bind(self, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        # sqlite3 には Decimal のアダプタが無い
        if isinstance(value, Decimal) and self.engine.dialect.name == "sqlite":
            return float(value)
        return value

    def _where(self, filters: dict[str, Any] | None, params: dict) -> str:
        clauses = []
        for col, value in (filters or {}).items():
            col = _check_identifier(col)
            if value is None:
                clauses.append(f"{col} IS NULL")
            else:
                clauses.append(f"{col} = :f_{col}")
                params[f"f_{col}"] = self._bind(value)
        return f" WHERE {' AND '.join(clauses)}" if clauses else ""

    async def _fetch(self, sql: str, params: dict) -> list[dict]:
        async with self.async_session() as session:
            result = await session.execute(text(sql), params)
            return [dict(row._mapping) for row in result.fetchall()]

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        columns: str = "*",
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        params: dict = {}
        sql = f"SELECT {_column_list(columns)} FROM {_check_identifier(table)}"
        sql += self._where(filters, params)
        if order_by:
            sql += f" ORDER BY {_check_identifier(order_by)} ASC"
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = int(limit)

        async def _call() -> list[dict]:
            try:
                return await self._fetch(sql, params)
            except OperationalError:
                raise
            except SQLAlchemyError as e:
                raise DataClientError("select", table, str(e)) from e

        return await _with_read_retry(
            "select", table, _call, (OperationalError,), self.read_retry_backoff
        )

    async def insert(self, table: str, record: dict) -> dict:
        [inserted] = await self.insert_many(table, [record])
        return inserted

    async def insert_many(self, table: str, records: list[dict]) -> list[dict]:
        if not records:
            return []
        rows = []
        for r in records:
            row = dict(r)
            row.setdefault("id", str(uuid4()))
            rows.append(row)

        columns = [_check_identifier(c) for c in rows[0]]
        sql = (
            f"INSERT INTO {_check_identifier(table)} ({', '.join(columns)}) "
            f"VALUES ({', '.join(':' + c for c in columns)})"
        )
        params = [{c: self._bind(row.get(c)) for c in columns} for row in rows]
        try:
            async with self.async_session() as session:
                await session.execute(text(sql), params)
                await session.commit()
        except SQLAlchemyError as e:
            raise DataClientError("insert", table, str(e)) from e
        return rows

    async def update(self, table: str, filters: dict[str, Any], patch: dict) -> dict | None:
        if not patch:
            raise ValueError("patch must not be empty")
        params: dict = {}
        assignments = []
        for col, value in patch.items():
            col = _check_identifier(col)
            assignments.append(f"{col} = :p_{col}")
            params[f"p_{col}"] = self._bind(value)
        sql = f"UPDATE {_check_identifier(table)} SET {', '.join(assignments)}"
        sql += self._where(filters, params) + " RETURNING *"
        try:
            async with self.async_session() as session:
                result = await session.execute(text(sql), params)
                rows = [dict(row) for row in result.mappings().all()]
                await session.commit()
        except SQLAlchemyError as e:
            raise DataClientError("update", table, str(e)) from e
        return rows[0] if rows else None

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        params: dict = {}
        sql = f"DELETE FROM {_check_identifier(table)}" + self._where(filters, params)
        try:
            async with self.async_session() as session:
                await session.execute(text(sql), params)
                await session.commit()
        except SQLAlchemyError as e:
            raise DataClientError("delete", table, str(e)) from e
