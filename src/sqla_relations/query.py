from __future__ import annotations

import asyncio
import inspect
import logging
import sys
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Generic, Literal, TypeVar, Union

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .columns import parse_column
from .model import Model


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from .expression import EagerNode
    from .registry import Registry


logger = logging.getLogger(__name__)

M = TypeVar("M", bound=Model)

_Operation = Literal["select", "insert", "update", "patch", "delete"]
AfterHook = Callable[[Any], Union[Any, Awaitable[Any]]]


class Executor:
    """Runs SQLAlchemy Core statements and returns plain dict rows.

    Bound to an ``AsyncEngine``, every statement checks out its own connection
    and commits on success, so concurrent eager-load branches really run in
    parallel. Bound to an ``AsyncConnection``, statements share the caller's
    transaction and are serialized, since a connection runs one statement at a
    time.
    """

    __slots__ = ("_lock", "bind")

    def __init__(self, bind: AsyncConnection | AsyncEngine) -> None:
        if not isinstance(bind, (AsyncConnection, AsyncEngine)):
            raise TypeError(f"Executor needs an AsyncConnection or AsyncEngine, got {type(bind).__name__}")

        self.bind = bind
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[AsyncConnection]:
        if isinstance(self.bind, AsyncEngine):
            async with self.bind.begin() as conn:
                yield conn
        else:
            async with self._lock:
                yield self.bind

    async def _execute(self, conn: AsyncConnection, stmt: sa.Executable) -> sa.CursorResult[Any]:
        logger.debug("Executing %s", stmt)
        return await conn.execute(stmt)

    async def fetch_all(self, stmt: sa.Executable) -> list[dict[str, Any]]:
        async with self._connection() as conn:
            result = await self._execute(conn, stmt)
            return [dict(row._mapping) for row in result]

    async def execute(self, stmt: sa.Executable) -> int:
        """Run a write statement and return the affected row count."""
        async with self._connection() as conn:
            result = await self._execute(conn, stmt)
            return result.rowcount

    async def insert_row(self, table: sa.Table, row: Mapping[str, Any]) -> dict[str, Any]:
        """Insert one row; the returned copy carries generated primary key values."""
        async with self._connection() as conn:
            result = await self._execute(conn, sa.insert(table).values(dict(row)))
            generated = result.inserted_primary_key

        out = dict(row)
        if generated is not None:
            for column, value in zip(table.primary_key.columns, generated):
                if value is not None and out.get(column.name) is None:
                    out[column.name] = value

        return out


class QueryBuilder(Generic[M]):
    """An in-flight statement over one model.

    Relation strategies augment a builder (``where_in``, ``join``,
    ``run_after``) and return it; nothing touches the database until
    :meth:`execute`. A builder can be resolved up front with :meth:`resolve`,
    in which case no statement is issued but the ``run_after`` hooks still
    run on the resolved value.
    """

    __slots__ = (
        "_after",
        "_eager",
        "_extra_columns",
        "_joins",
        "_limit",
        "_operation",
        "_order_by",
        "_records",
        "_resolved",
        "_single",
        "_values",
        "_where",
        "executor",
        "model",
        "registry",
        "table",
    )

    def __init__(self, model: type[M], *, registry: Registry, executor: Executor) -> None:
        self.model = model
        self.registry = registry
        self.executor = executor
        self.table = registry.table(model)
        self._operation: _Operation = "select"
        self._where: list[sa.ColumnElement[bool]] = []
        self._joins: list[tuple[sa.FromClause, sa.ColumnElement[bool]]] = []
        self._extra_columns: list[sa.ColumnElement[Any]] = []
        self._order_by: list[sa.ColumnElement[Any]] = []
        self._limit: int | None = None
        self._single = False
        self._values: dict[str, Any] = {}
        self._records: list[M] = []
        self._resolved: Any = None
        self._after: list[AfterHook] = []
        self._eager: str | EagerNode | None = None

    def column(self, ref: str | sa.ColumnElement[Any]) -> sa.ColumnElement[Any]:
        """Resolve ``"column"`` on this model's table or ``"table.column"`` anywhere."""
        if not isinstance(ref, str):
            return ref

        parsed = parse_column(ref)
        if parsed is None:
            return self.table.c[ref]

        return self.registry.table(parsed.table).c[parsed.column]

    def where(self, *clauses: sa.ColumnElement[bool]) -> Self:
        self._where.extend(clauses)
        return self

    def where_in(self, column: str | sa.ColumnElement[Any], keys: Iterable[Any]) -> Self:
        self._where.append(self.column(column).in_(list(keys)))
        return self

    def filter_by(self, **values: Any) -> Self:
        """Equality conditions keyed by column name (``None`` means ``IS NULL``)."""
        for name, value in values.items():
            column = self.column(name)
            self._where.append(column.is_(None) if value is None else column == value)
        return self

    def join(self, target: sa.FromClause, onclause: sa.ColumnElement[bool]) -> Self:
        self._joins.append((target, onclause))
        return self

    def add_columns(self, *columns: sa.ColumnElement[Any]) -> Self:
        self._extra_columns.extend(columns)
        return self

    def order_by(self, *columns: str | sa.ColumnElement[Any]) -> Self:
        self._order_by.extend(self.column(column) for column in columns)
        return self

    def limit(self, limit: int | None) -> Self:
        self._limit = limit
        return self

    def first(self) -> Self:
        """Return a single record (or ``None``) instead of a list."""
        self._single = True
        return self.limit(1)

    def eager(self, expression: str | EagerNode) -> Self:
        """Load the relation graph described by *expression* onto the fetched records."""
        self._eager = expression
        return self

    def resolve(self, result: Any) -> Self:
        """Skip the database and use *result* as the query result."""
        self._resolved = result
        return self

    @property
    def is_resolved(self) -> bool:
        return self._resolved is not None

    def run_after(self, hook: AfterHook) -> Self:
        """Register a (possibly async) hook that receives and replaces the result."""
        self._after.append(hook)
        return self

    def insert(self, records: Sequence[M | Mapping[str, Any]]) -> Self:
        self._operation = "insert"
        self._records = [self.model.ensure(record) for record in records]
        return self

    def update(self, values: M | Mapping[str, Any]) -> Self:
        self._operation = "update"
        self._values = self._columns_of(values)
        return self

    def patch(self, values: Mapping[str, Any]) -> Self:
        self._operation = "patch"
        self._values = self._columns_of(values)
        return self

    def delete(self) -> Self:
        self._operation = "delete"
        return self

    def _columns_of(self, values: M | Mapping[str, Any]) -> dict[str, Any]:
        if isinstance(values, Model):
            return values.to_database_row()

        return self.model.ensure(values).to_database_row()

    def _from_clause(self) -> sa.FromClause:
        from_: sa.FromClause = self.table
        for target, onclause in self._joins:
            from_ = from_.join(target, onclause)
        return from_

    def select_column(self, column: str | sa.ColumnElement[Any]) -> sa.Select[Any]:
        """A ``SELECT column`` over this builder's joins and conditions, for use as a subquery."""
        return sa.select(self.column(column)).select_from(self._from_clause()).where(*self._where)

    def to_statement(self) -> sa.Executable:
        """Build the SQLAlchemy statement for select, update, patch and delete."""
        match self._operation:
            case "select":
                stmt = (
                    sa.select(self.table, *self._extra_columns)
                    .select_from(self._from_clause())
                    .where(*self._where)
                )
                stmt = stmt.order_by(*(self._order_by or self.table.primary_key.columns))
                if self._limit is not None:
                    stmt = stmt.limit(self._limit)
                return stmt
            case "update" | "patch":
                return sa.update(self.table).where(*self._where).values(self._values)
            case "delete":
                return sa.delete(self.table).where(*self._where)
            case _:
                raise TypeError(f"{self._operation} queries have no single statement")

    async def execute(self) -> Any:
        """Run the query, then the ``run_after`` hooks, then the eager load."""
        if self._resolved is not None:
            result = self._resolved
        elif self._operation == "select":
            rows = await self.executor.fetch_all(self.to_statement())
            result = [self.model.from_database_row(row) for row in rows]
        elif self._operation == "insert":
            result = []
            for record in self._records:
                row = await self.executor.insert_row(self.table, record.to_database_row())
                record.__dict__.update(self.model.parse_database_row(row))
                result.append(record)
        else:
            result = await self.executor.execute(self.to_statement())

        for hook in self._after:
            result = hook(result)
            if inspect.isawaitable(result):
                result = await result

        if self._eager is not None and self._operation == "select" and result:
            from .eager import load_related

            await load_related(result, self._eager, registry=self.registry, executor=self.executor)

        if self._single and isinstance(result, list):
            return result[0] if result else None

        return result

    def __await__(self) -> Any:
        return self.execute().__await__()
