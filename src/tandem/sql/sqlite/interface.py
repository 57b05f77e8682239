from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from sqlite3 import Cursor
from typing import (
    Any,
    AsyncIterator,
    Dict,
    Iterable,
    Optional,
    Sequence,
    Tuple,
)

from tandem.base.engine import Params, TableName
from tandem.base.interface import BaseInterface
from tandem.context import Context
from tandem.exception import TandemError
from tandem.transaction.options import TransactionConfig

try:
    import aiosqlite

    AIOSQLITE_ENABLED = True
except ModuleNotFoundError:
    AIOSQLITE_ENABLED = False

logger = logging.getLogger(__name__)


class SQLitePool(BaseInterface):
    """Interface for connecting to a SQLite database

    SQLite has a single shared connection. Users take turns on it, so a
    transaction owns it exclusively until it is finalized, and going
    around the transaction to the pool from inside it waits forever.
    """

    scheme = "sqlite"

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        super().__init__()

    def _setup_pool(self):
        if not AIOSQLITE_ENABLED:
            raise TandemError(
                "SQLite driver not found. Try reinstalling tandem: "
                "pip install tandem[sqlite]"
            )

    def _populate_dsn(self):
        self._dsn = self._full_dsn = f"{self.scheme}:///{self._db_path}"

    @property
    def db_path(self) -> str:
        return self._db_path

    async def open(self):
        """Open the connection"""
        self._conn = await aiosqlite.connect(
            self._db_path, isolation_level=None
        )
        self._conn.row_factory = self._dict_factory

    async def close(self):
        """Close the connection"""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def connection(
        self, timeout: Optional[float] = None
    ) -> AsyncIterator[aiosqlite.Connection]:
        """Obtain the connection to the database

        Args:
            timeout (float, optional): Time to wait for the connection to be
                free. Defaults to `None`.

        Yields:
            aiosqlite.Connection: The database connection
        """
        connection = await self._getconn(timeout)
        try:
            yield connection
        finally:
            await self._putconn(connection)

    async def _getconn(
        self, timeout: Optional[float] = None
    ) -> aiosqlite.Connection:
        if self._conn is None:
            raise TandemError(f"{self} is not open")
        await asyncio.wait_for(self._lock.acquire(), timeout)
        return self._conn

    async def _putconn(self, connection: aiosqlite.Connection) -> None:
        try:
            if connection.in_transaction:
                logger.warning(
                    "Connection returned to %s inside a transaction, "
                    "rolling back",
                    self,
                )
                await connection.execute("ROLLBACK")
                await connection.execute("PRAGMA query_only = OFF")
        finally:
            self._lock.release()

    async def _start(
        self, connection: aiosqlite.Connection, config: TransactionConfig
    ) -> None:
        if config.isolation_level or config.deferrable_mode:
            logger.debug(
                "SQLite transactions are serializable, ignoring %r", config
            )
        await connection.execute("BEGIN")
        if config.read_only:
            await connection.execute("PRAGMA query_only = ON")

    async def _commit(self, connection: aiosqlite.Connection) -> None:
        await connection.execute("COMMIT")
        await connection.execute("PRAGMA query_only = OFF")

    async def _rollback(self, connection: aiosqlite.Connection) -> None:
        await connection.execute("ROLLBACK")
        await connection.execute("PRAGMA query_only = OFF")

    @asynccontextmanager
    async def _cursor(
        self,
        connection: aiosqlite.Connection,
        query: str,
        params: Params,
        ctx: Context,
    ) -> AsyncIterator[Any]:
        cursor = await ctx.wait(connection.execute(query, params))
        try:
            yield cursor
        finally:
            await cursor.close()

    async def _copy_rows(
        self,
        connection: aiosqlite.Connection,
        table: TableName,
        columns: Sequence[str],
        rows: Iterable[Sequence[Any]],
    ) -> int:
        names = (table,) if isinstance(table, str) else tuple(table)
        target = ".".join(_quote(name) for name in names)
        statement = "INSERT INTO {} ({}) VALUES ({})".format(
            target,
            ", ".join(_quote(column) for column in columns),
            ", ".join("?" for _ in columns),
        )
        values = [tuple(row) for row in rows]
        await connection.executemany(statement, values)
        return len(values)

    @staticmethod
    def _dict_factory(cursor: Cursor, row: Tuple[Any, ...]) -> Dict[str, Any]:
        return {val[0]: row[idx] for idx, val in enumerate(cursor.description)}


def _quote(identifier: str) -> str:
    return '"{}"'.format(identifier.replace('"', '""'))
