"""
Record store contract and SQLAlchemy adapter for Haven.

The hosted record store is untrusted: it only ever receives ciphertext for
sensitive fields. Services talk to it through the RecordStore protocol:

- select(table, query) -> list of row dicts
- select_single(table, query) -> row dict, None for no row, StoreError
  for more than one
- insert / insert_many / insert_all (several tables, one transaction)
- update / increment / delete
- subscribe(channel, table, filters, callback) -> push on INSERT

SQLRecordStore implements the protocol with SQLAlchemy Core on an async
engine over the tables declared in haven.models. Ids (uuid4 strings) and
created_at stamps are assigned client-side; created_at is strictly
increasing within one store so newest-first ordering is stable.

Every SQLAlchemy failure is wrapped in StoreError.

Usage:
    store = create_store(settings)
    await store.create_all()
    rows = await store.select("mood_entries", Query().eq("user_id", uid).order("created_at", ascending=False).limit(30))
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import Table, and_, delete, insert, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from haven.config.settings import Settings, get_settings
from haven.lib.exceptions import StoreError
from haven.models import Base
from haven.models.base import new_id

logger = logging.getLogger(__name__)

RowCallback = Callable[[dict[str, Any]], Awaitable[None] | None]

_TIMESTAMP_COLUMNS = ("created_at", "joined_at")


# =============================================================================
# Query builder
# =============================================================================


@dataclass(frozen=True)
class Condition:
    column: str
    op: str
    value: Any = None


@dataclass
class Query:
    """
    Fluent filter/order/limit builder.

    All conditions are ANDed. any_of() adds one OR group of equality
    conditions, e.g. "seeker_user_id = x OR supporter_user_id = x".
    """

    conditions: list[Condition] = field(default_factory=list)
    any_groups: list[dict[str, Any]] = field(default_factory=list)
    ordering: list[tuple[str, bool]] = field(default_factory=list)
    max_rows: int | None = None

    def _add(self, column: str, op: str, value: Any = None) -> Query:
        self.conditions.append(Condition(column, op, value))
        return self

    def eq(self, column: str, value: Any) -> Query:
        return self._add(column, "eq", value)

    def neq(self, column: str, value: Any) -> Query:
        return self._add(column, "neq", value)

    def gte(self, column: str, value: Any) -> Query:
        return self._add(column, "gte", value)

    def lt(self, column: str, value: Any) -> Query:
        return self._add(column, "lt", value)

    def is_null(self, column: str) -> Query:
        return self._add(column, "is_null")

    def not_null(self, column: str) -> Query:
        return self._add(column, "not_null")

    def any_of(self, equalities: dict[str, Any]) -> Query:
        self.any_groups.append(dict(equalities))
        return self

    def match(self, equalities: dict[str, Any]) -> Query:
        for column, value in equalities.items():
            self.eq(column, value)
        return self

    def order(self, column: str, ascending: bool = True) -> Query:
        self.ordering.append((column, ascending))
        return self

    def limit(self, n: int) -> Query:
        self.max_rows = n
        return self

    def where_clause(self, table: Table) -> Any:
        clauses = [_condition_clause(table, c) for c in self.conditions]
        for group in self.any_groups:
            clauses.append(or_(*(_column(table, name) == value for name, value in group.items())))
        return and_(*clauses) if clauses else None

    def matches(self, row: dict[str, Any]) -> bool:
        """Evaluate the equality/null conditions against a row in Python."""
        for c in self.conditions:
            value = row.get(c.column)
            if c.op == "eq" and value != c.value:
                return False
            if c.op == "neq" and value == c.value:
                return False
            if c.op == "is_null" and value is not None:
                return False
            if c.op == "not_null" and value is None:
                return False
            if c.op in ("gte", "lt"):
                if value is None:
                    return False
                if c.op == "gte" and not value >= c.value:
                    return False
                if c.op == "lt" and not value < c.value:
                    return False
        return all(
            any(row.get(name) == expected for name, expected in group.items())
            for group in self.any_groups
        )


def _column(table: Table, name: str) -> Any:
    try:
        return table.c[name]
    except KeyError as e:
        raise StoreError(f"Unknown column {table.name}.{name}") from e


def _condition_clause(table: Table, condition: Condition) -> Any:
    col = _column(table, condition.column)
    if condition.op == "eq":
        return col == condition.value
    if condition.op == "neq":
        return col != condition.value
    if condition.op == "gte":
        return col >= condition.value
    if condition.op == "lt":
        return col < condition.value
    if condition.op == "is_null":
        return col.is_(None)
    if condition.op == "not_null":
        return col.is_not(None)
    raise StoreError(f"Unsupported operator {condition.op}")


# =============================================================================
# Contract
# =============================================================================


@dataclass
class Subscription:
    """Handle for a push subscription. unsubscribe() stops delivery."""

    channel: str
    table: str
    filters: dict[str, Any]
    callback: RowCallback
    _owner: SQLRecordStore | None = field(default=None, repr=False)

    def unsubscribe(self) -> None:
        if self._owner is not None:
            self._owner.remove_subscription(self)
            self._owner = None


class RecordStore(Protocol):
    async def select(self, table: str, query: Query | None = None) -> list[dict[str, Any]]: ...

    async def select_single(self, table: str, query: Query) -> dict[str, Any] | None: ...

    async def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]: ...

    async def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]: ...

    async def insert_all(self, batches: dict[str, list[dict[str, Any]]]) -> dict[str, list[dict[str, Any]]]: ...

    async def update(self, table: str, query: Query, values: dict[str, Any]) -> list[dict[str, Any]]: ...

    async def delete(self, table: str, query: Query) -> int: ...

    async def increment(
        self,
        table: str,
        query: Query,
        column: str,
        amount: int = 1,
        values: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]: ...

    def subscribe(
        self,
        channel: str,
        table: str,
        filters: dict[str, Any],
        callback: RowCallback,
    ) -> Subscription: ...


# =============================================================================
# SQLAlchemy adapter
# =============================================================================


def _normalize(row: dict[str, Any]) -> dict[str, Any]:
    # SQLite returns naive datetimes for timezone-aware columns
    return {
        key: value.replace(tzinfo=UTC) if isinstance(value, datetime) and value.tzinfo is None else value
        for key, value in row.items()
    }


class SQLRecordStore:
    """RecordStore over an AsyncEngine and the haven.models metadata."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._subscriptions: list[Subscription] = []
        self._last_stamp: datetime | None = None
        # A StaticPool hands every caller the same connection; transactions must not interleave on it
        self._lock: asyncio.Lock | None = (
            asyncio.Lock() if isinstance(engine.sync_engine.pool, StaticPool) else None
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        async with self._transaction() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        self._subscriptions.clear()
        await self._engine.dispose()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncConnection]:
        if self._lock is None:
            async with self._begin() as conn:
                yield conn
            return
        async with self._lock:
            async with self._begin() as conn:
                yield conn

    @asynccontextmanager
    async def _begin(self) -> AsyncIterator[AsyncConnection]:
        try:
            async with self._engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            logger.error("store_operation_failed", extra={"error": type(e).__name__})
            raise StoreError(f"Record store error: {type(e).__name__}") from e

    def _table(self, name: str) -> Table:
        table = Base.metadata.tables.get(name)
        if table is None:
            raise StoreError(f"Unknown table {name}")
        return table

    def _stamp(self) -> datetime:
        now = datetime.now(UTC)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    def _prepare(self, table: Table, values: dict[str, Any]) -> dict[str, Any]:
        for name in values:
            _column(table, name)
        prepared = dict(values)
        if "id" in table.c and not prepared.get("id"):
            prepared["id"] = new_id()
        for name in _TIMESTAMP_COLUMNS:
            if name in table.c and prepared.get(name) is None:
                prepared[name] = self._stamp()
        return prepared

    async def _select_ids(self, conn: AsyncConnection, table: Table, ids: list[str]) -> list[dict[str, Any]]:
        result = await conn.execute(select(table).where(table.c.id.in_(ids)))
        by_id = {row["id"]: _normalize(dict(row)) for row in result.mappings()}
        return [by_id[i] for i in ids if i in by_id]

    async def select(self, table: str, query: Query | None = None) -> list[dict[str, Any]]:
        tbl = self._table(table)
        query = query or Query()
        stmt = select(tbl)
        where = query.where_clause(tbl)
        if where is not None:
            stmt = stmt.where(where)
        for name, ascending in query.ordering:
            col = _column(tbl, name)
            stmt = stmt.order_by(col.asc() if ascending else col.desc())
        if query.max_rows is not None:
            stmt = stmt.limit(query.max_rows)
        async with self._transaction() as conn:
            result = await conn.execute(stmt)
            return [_normalize(dict(row)) for row in result.mappings()]

    async def select_single(self, table: str, query: Query) -> dict[str, Any] | None:
        rows = await self.select(table, query)
        if len(rows) > 1:
            raise StoreError(f"Expected at most one row in {table}, got {len(rows)}")
        return rows[0] if rows else None

    async def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        rows = await self.insert_many(table, [values])
        if not rows:
            raise StoreError(f"Inserted row in {table} could not be read back")
        return rows[0]

    async def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not rows:
            return []
        return (await self.insert_all({table: rows}))[table]

    async def insert_all(self, batches: dict[str, list[dict[str, Any]]]) -> dict[str, list[dict[str, Any]]]:
        """Insert rows into several tables in one transaction; either all land or none."""
        prepared: dict[str, list[dict[str, Any]]] = {}
        for table, rows in batches.items():
            if rows:
                tbl = self._table(table)
                prepared[table] = [self._prepare(tbl, values) for values in rows]
        inserted: dict[str, list[dict[str, Any]]] = {table: [] for table in batches}
        if not prepared:
            return inserted
        async with self._transaction() as conn:
            for table, rows in prepared.items():
                tbl = self._table(table)
                for values in rows:
                    await conn.execute(insert(tbl).values(**values))
                inserted[table] = await self._select_ids(conn, tbl, [values["id"] for values in rows])
        for table, rows in inserted.items():
            for row in rows:
                await self._notify(table, row)
        return inserted

    async def update(self, table: str, query: Query, values: dict[str, Any]) -> list[dict[str, Any]]:
        tbl = self._table(table)
        for name in values:
            _column(tbl, name)
        where = query.where_clause(tbl)
        changes = dict(values)
        if "updated_at" in tbl.c and "updated_at" not in changes:
            changes["updated_at"] = datetime.now(UTC)
        async with self._transaction() as conn:
            id_stmt = select(tbl.c.id)
            if where is not None:
                id_stmt = id_stmt.where(where)
            ids = list((await conn.execute(id_stmt)).scalars())
            if not ids:
                return []
            await conn.execute(update(tbl).where(tbl.c.id.in_(ids)).values(**changes))
            return await self._select_ids(conn, tbl, ids)

    async def increment(
        self,
        table: str,
        query: Query,
        column: str,
        amount: int = 1,
        values: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Add `amount` to an integer column in one UPDATE, with optional plain `values`; returns the updated rows."""
        tbl = self._table(table)
        col = _column(tbl, column)
        return await self.update(table, query, {**(values or {}), column: col + amount})

    async def delete(self, table: str, query: Query) -> int:
        tbl = self._table(table)
        stmt = delete(tbl)
        where = query.where_clause(tbl)
        if where is not None:
            stmt = stmt.where(where)
        async with self._transaction() as conn:
            result = await conn.execute(stmt)
            return result.rowcount or 0

    # ---------------------------------------------------------------------
    # Subscriptions
    # ---------------------------------------------------------------------

    def subscribe(
        self,
        channel: str,
        table: str,
        filters: dict[str, Any],
        callback: RowCallback,
    ) -> Subscription:
        self._table(table)
        subscription = Subscription(channel, table, dict(filters), callback, _owner=self)
        self._subscriptions.append(subscription)
        logger.debug("store_subscribed", extra={"channel": channel, "table": table})
        return subscription

    def remove_subscription(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def unsubscribe_channel(self, channel: str) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.channel != channel]

    async def _notify(self, table: str, row: dict[str, Any]) -> None:
        for subscription in list(self._subscriptions):
            if subscription.table != table:
                continue
            if any(row.get(k) != v for k, v in subscription.filters.items()):
                continue
            try:
                outcome = subscription.callback(dict(row))
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:  # Intentional catch-all: the write already committed, one subscriber must not fail it
                logger.exception(
                    "subscription_delivery_failed",
                    extra={"channel": subscription.channel, "table": table},
                )


def create_store(settings: Settings | None = None) -> SQLRecordStore:
    """Build a SQLRecordStore for HAVEN_DATABASE_URL."""
    settings = settings or get_settings()
    url = settings.database_url
    kwargs: dict[str, Any] = {}
    if url.startswith("sqlite") and ":memory:" in url:
        # One shared connection, otherwise every connection sees an empty database
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    engine = create_async_engine(url, **kwargs)
    return SQLRecordStore(engine)


__all__ = [
    "Condition",
    "Query",
    "RecordStore",
    "RowCallback",
    "SQLRecordStore",
    "Subscription",
    "create_store",
]
