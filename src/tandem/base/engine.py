from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncContextManager,
    AsyncGenerator,
    AsyncIterator,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
    runtime_checkable,
)

from tandem.context import Context, resolve_context
from tandem.exception import BatchError, NoRowsError

logger = logging.getLogger(__name__)

Params = Optional[Union[Sequence[Any], Dict[str, Any]]]
TableName = Union[str, Sequence[str]]


@dataclass(frozen=True)
class CommandResult:
    """Summary of an executed statement"""

    rowcount: int
    status: Optional[str] = None


@dataclass(frozen=True)
class BatchResult(CommandResult):
    rows: List[Dict[str, Any]] = field(default_factory=list)


class Batch:
    """An ordered set of statements sent together with `send_batch`"""

    def __init__(self) -> None:
        self._statements: List[Tuple[str, Params]] = []

    def queue(self, query: str, params: Params = None) -> Batch:
        self._statements.append((query, params))
        return self

    def __len__(self) -> int:
        return len(self._statements)

    def __iter__(self) -> Iterator[Tuple[str, Params]]:
        return iter(self._statements)


class Rows:
    """Lazy result of `query`, iterated with `async for`.

    The connection stays in use until every row has been read or the
    result is closed. Stopping early requires `close()`, or using the
    result as an async context manager:

        async with engine.query("SELECT id FROM items") as rows:
            async for row in rows:
                break
    """

    def __init__(self, iterator: AsyncGenerator[Dict[str, Any], None]):
        self._iterator = iterator

    def __aiter__(self) -> Rows:
        return self

    async def __anext__(self) -> Dict[str, Any]:
        return await self._iterator.__anext__()

    async def __aenter__(self) -> Rows:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop reading and give the connection back"""
        await self._iterator.aclose()


class Row:
    """Handle on a single-row query.

    Nothing runs until the row is fetched, so a failing query or a missing
    row only raises when the row is accessed.
    """

    def __init__(
        self,
        engine: SQLEngine,
        query: str,
        params: Params,
        ctx: Optional[Context],
    ) -> None:
        self._engine = engine
        self._query = query
        self._params = params
        self._ctx = ctx

    async def fetch(self) -> Dict[str, Any]:
        """Run the query and return its first row

        Raises:
            NoRowsError: The query produced no row
        """
        row = await self._engine._fetch_one(
            self._query, self._params, self._ctx
        )
        if row is None:
            raise NoRowsError(f"no rows in result set: {self._query}")
        return row

    async def scalar(self) -> Any:
        """Return the first column of the first row"""
        row = await self.fetch()
        return next(iter(row.values()))


@runtime_checkable
class QueryEngine(Protocol):
    """What repositories execute against: the pool or an open transaction"""

    async def execute(
        self,
        query: str,
        params: Params = None,
        *,
        ctx: Optional[Context] = None,
    ) -> CommandResult: ...

    def query(
        self,
        query: str,
        params: Params = None,
        *,
        ctx: Optional[Context] = None,
    ) -> Rows: ...

    def query_row(
        self,
        query: str,
        params: Params = None,
        *,
        ctx: Optional[Context] = None,
    ) -> Row: ...

    async def send_batch(
        self, batch: Batch, *, ctx: Optional[Context] = None
    ) -> List[BatchResult]: ...

    async def copy_from(
        self,
        table: TableName,
        columns: Sequence[str],
        rows: Iterable[Sequence[Any]],
        *,
        ctx: Optional[Context] = None,
    ) -> int: ...


@runtime_checkable
class QueryEngineProvider(Protocol):
    def get_query_engine(self, ctx: Optional[Context] = None) -> QueryEngine:
        ...


class SQLEngine(ABC):
    """Shared implementation of the `QueryEngine` operations.

    Subclasses decide where a connection comes from with `_connect`; the
    driver specifics live in `_cursor` and `_copy_rows`.
    """

    fetch_size: int = 100

    @abstractmethod
    def _connect(self, ctx: Context) -> AsyncContextManager[Any]: ...

    @abstractmethod
    def _cursor(
        self, connection: Any, query: str, params: Params, ctx: Context
    ) -> AsyncContextManager[Any]: ...

    @abstractmethod
    async def _copy_rows(
        self,
        connection: Any,
        table: TableName,
        columns: Sequence[str],
        rows: Iterable[Sequence[Any]],
    ) -> int: ...

    async def execute(
        self,
        query: str,
        params: Params = None,
        *,
        ctx: Optional[Context] = None,
    ) -> CommandResult:
        """Execute a statement

        Args:
            query (str): SQL, with placeholders in the driver's style
            params (Params, optional): Positional or named parameters
            ctx (Context, optional): Call context. Defaults to the ambient
                context.

        Returns:
            CommandResult: Affected rows and status of the statement
        """
        ctx = resolve_context(ctx)
        async with self._connect(ctx) as connection:
            async with self._cursor(
                connection, query, params, ctx
            ) as cursor:
                return _summarize(cursor)

    def query(
        self,
        query: str,
        params: Params = None,
        *,
        ctx: Optional[Context] = None,
    ) -> Rows:
        """Run a query and lazily yield its rows as dicts

        Nothing runs until the first row is requested. Close the result when
        not reading it to the end.
        """
        return Rows(self._iterate(query, params, resolve_context(ctx)))

    async def _iterate(
        self, query: str, params: Params, ctx: Context
    ) -> AsyncIterator[Dict[str, Any]]:
        async with self._connect(ctx) as connection:
            async with self._cursor(
                connection, query, params, ctx
            ) as cursor:
                while True:
                    rows = await ctx.wait(cursor.fetchmany(self.fetch_size))
                    if not rows:
                        break
                    for row in rows:
                        yield row

    def query_row(
        self,
        query: str,
        params: Params = None,
        *,
        ctx: Optional[Context] = None,
    ) -> Row:
        return Row(self, query, params, ctx)

    async def _fetch_one(
        self, query: str, params: Params, ctx: Optional[Context]
    ) -> Optional[Dict[str, Any]]:
        ctx = resolve_context(ctx)
        async with self._connect(ctx) as connection:
            async with self._cursor(
                connection, query, params, ctx
            ) as cursor:
                return await ctx.wait(cursor.fetchone())

    async def send_batch(
        self, batch: Batch, *, ctx: Optional[Context] = None
    ) -> List[BatchResult]:
        """Run every statement of `batch`, in order, on one connection

        Raises:
            BatchError: A statement failed. Statements after it are not run.
        """
        ctx = resolve_context(ctx)
        results: List[BatchResult] = []
        async with self._connect(ctx) as connection:
            for index, (query, params) in enumerate(batch):
                try:
                    async with self._cursor(
                        connection, query, params, ctx
                    ) as cursor:
                        rows = (
                            await ctx.wait(cursor.fetchall())
                            if cursor.description
                            else []
                        )
                        summary = _summarize(cursor)
                except Exception as e:
                    raise BatchError(
                        f"batch statement {index} failed: {e}", index, query
                    ) from e
                results.append(
                    BatchResult(summary.rowcount, summary.status, list(rows))
                )
        logger.debug("Sent batch of %d statements", len(results))
        return results

    async def copy_from(
        self,
        table: TableName,
        columns: Sequence[str],
        rows: Iterable[Sequence[Any]],
        *,
        ctx: Optional[Context] = None,
    ) -> int:
        """Bulk load `rows` into `table`

        Args:
            table (TableName): Table name, or a `(schema, table)` sequence
            columns (Sequence[str]): Target columns, in row order
            rows (Iterable[Sequence[Any]]): Values to load

        Returns:
            int: Number of rows loaded
        """
        ctx = resolve_context(ctx)
        async with self._connect(ctx) as connection:
            count = await ctx.wait(
                self._copy_rows(connection, table, columns, rows)
            )
        logger.debug("Copied %d rows into %s", count, table)
        return count


def _summarize(cursor: Any) -> CommandResult:
    return CommandResult(
        rowcount=cursor.rowcount,
        status=getattr(cursor, "statusmessage", None),
    )
