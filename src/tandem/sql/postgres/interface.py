from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Optional, Sequence

from psycopg import AsyncConnection, sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from tandem.base.engine import Params, TableName
from tandem.base.interface import BaseInterface
from tandem.context import Context
from tandem.transaction.options import TransactionConfig


class PostgresPool(BaseInterface):
    """Interface for connecting to a Postgres database"""

    scheme = "postgres"
    default_port = 5432

    def _setup_pool(self):
        self._pool = AsyncConnectionPool(
            self.full_dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            open=False,
            reset=self._reset_connection,
        )

    async def open(self):
        """Open connections to the pool"""
        await self._pool.open()

    async def close(self):
        """Close connections to the pool"""
        await self._pool.close()

    @asynccontextmanager
    async def connection(
        self, timeout: Optional[float] = None
    ) -> AsyncIterator[AsyncConnection]:
        """Obtain a connection to the database

        The work done on the connection is committed when the block exits,
        or rolled back if it raises.

        Args:
            timeout (float, optional): Time before an error is raised on
                failure to connect. Defaults to `None`.

        Yields:
            AsyncConnection: A database connection
        """
        async with self._pool.connection(timeout=timeout) as conn:
            yield conn

    async def _getconn(
        self, timeout: Optional[float] = None
    ) -> AsyncConnection:
        return await self._pool.getconn(timeout=timeout)

    async def _putconn(self, connection: AsyncConnection) -> None:
        await self._pool.putconn(connection)

    @staticmethod
    async def _reset_connection(connection: AsyncConnection) -> None:
        if connection.autocommit:
            await connection.set_autocommit(False)

    async def _start(
        self, connection: AsyncConnection, config: TransactionConfig
    ) -> None:
        # The explicit BEGIN is the only transaction boundary
        await connection.set_autocommit(True)
        await connection.execute(config.begin_statement())

    async def _commit(self, connection: AsyncConnection) -> None:
        await connection.execute("COMMIT")

    async def _rollback(self, connection: AsyncConnection) -> None:
        await connection.execute("ROLLBACK")

    @asynccontextmanager
    async def _cursor(
        self,
        connection: AsyncConnection,
        query: str,
        params: Params,
        ctx: Context,
    ) -> AsyncIterator[Any]:
        async with connection.cursor(row_factory=dict_row) as cursor:
            await ctx.wait(cursor.execute(query, params))
            yield cursor

    async def _copy_rows(
        self,
        connection: AsyncConnection,
        table: TableName,
        columns: Sequence[str],
        rows: Iterable[Sequence[Any]],
    ) -> int:
        names = (table,) if isinstance(table, str) else tuple(table)
        statement = sql.SQL("COPY {} ({}) FROM STDIN").format(
            sql.Identifier(*names),
            sql.SQL(", ").join(sql.Identifier(column) for column in columns),
        )
        count = 0
        async with connection.cursor() as cursor:
            async with cursor.copy(statement) as copy:
                for row in rows:
                    await copy.write_row(row)
                    count += 1
        return count
