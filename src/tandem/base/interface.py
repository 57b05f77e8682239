from __future__ import annotations

import logging
from abc import abstractmethod
from collections import namedtuple
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Optional
from urllib.parse import urlparse

from tandem.base.engine import SQLEngine
from tandem.context import Context, ContextKey, resolve_context
from tandem.exception import DeadlineExceededError, TandemError
from tandem.transaction.handle import Transaction
from tandem.transaction.options import TransactionConfig

logger = logging.getLogger(__name__)

UrlMapping = namedtuple("UrlMapping", ("key", "cast"))


URLPARSE_MAPPING = {
    "hostname": UrlMapping("_host", str),
    "username": UrlMapping("_user", str),
    "password": UrlMapping("_password", str),
    "port": UrlMapping("_port", int),
    "path": UrlMapping("_db", lambda value: value.replace("/", "")),
    "query": UrlMapping("_query", str),
}


class BaseInterface(SQLEngine):
    """A connection pool.

    The pool is itself a `QueryEngine`: every operation borrows a connection
    for its own duration. `begin` hands out a `Transaction` that keeps one
    connection until it is committed or rolled back.
    """

    scheme = "dummy"
    default_port: Optional[int] = None

    @abstractmethod
    def _setup_pool(self): ...

    @abstractmethod
    async def open(self): ...

    @abstractmethod
    async def close(self): ...

    @abstractmethod
    def connection(
        self, timeout: Optional[float] = None
    ) -> AsyncContextManager[Any]: ...

    @abstractmethod
    async def _getconn(self, timeout: Optional[float] = None) -> Any:
        """Take a connection out of the pool for a transaction"""

    @abstractmethod
    async def _putconn(self, connection: Any) -> None:
        """Give a transaction's connection back to the pool"""

    @abstractmethod
    async def _start(
        self, connection: Any, config: TransactionConfig
    ) -> None: ...

    @abstractmethod
    async def _commit(self, connection: Any) -> None: ...

    @abstractmethod
    async def _rollback(self, connection: Any) -> None: ...

    def __init__(
        self,
        dsn: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        db: Optional[str] = None,
        query: Optional[str] = None,
        min_size: int = 1,
        max_size: Optional[int] = None,
    ) -> None:
        """DB class initialization.

        Args:
            dsn (str, optional): DB data source name
            host (str, optional): DB address URL or IP
            port (int, optional): DB port. Defaults to the driver's port
            user (str, optional): DB user
            password (str, optional): DB password
            db (str, optional): DB name
            query (str, optional): DB query parameters. Defaults to None
            min_size (int, optional): Minimum number of connections in pool.
                Defaults to 1
            max_size (int, optional): Maximum number of connections in pool.
                Defaults to None
        """

        if dsn and host:
            raise TandemError("Cannot connect to DB using host and dsn")

        if not dsn:
            if port and (
                not isinstance(port, int) or port not in range(0, 65536)
            ):
                raise TandemError(
                    "port: must be an integer between 0 and 65535"
                )

            if host and (not isinstance(host, str) or not len(host) > 0):
                raise TandemError(
                    "host: must be a string at least 1 character long"
                )

        if password is not None and (
            not isinstance(password, str) or not len(password) > 0
        ):
            raise TandemError(
                "password: must be a string at least 1 character long"
            )

        if max_size is not None and max_size < min_size:
            raise TandemError("max_size: must not be smaller than min_size")

        self._dsn = dsn
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._db = db
        self._query = query
        self._min_size = min_size
        self._max_size = max_size
        self._full_dsn: Optional[str] = None
        self.transaction_key: ContextKey[Transaction] = ContextKey(
            f"transaction:{self.__class__.__name__}:{id(self):x}"
        )

        self._populate_connection_args()
        self._populate_dsn()
        self._setup_pool()

    def __str__(self) -> str:
        return f"<{self.__class__.__name__} {self.dsn}>"

    def _populate_connection_args(self):
        dsn = self.dsn or ""
        if dsn:
            parts = urlparse(dsn)
            defaults = {
                "port": self.default_port,
                "hostname": "localhost",
                "username": None,
                "password": None,
                "path": "/",
                "query": "",
            }
            for key, mapping in URLPARSE_MAPPING.items():
                if not getattr(self, mapping.key):
                    value = getattr(parts, key, None)
                    if value is None:
                        value = defaults.get(key)
                    if value is not None:
                        setattr(self, mapping.key, mapping.cast(value))
        elif self._port is None:
            self._port = self.default_port

    def _populate_dsn(self):
        host = self.host or "localhost"
        netloc = host if self.port is None else f"{host}:{self.port}"
        location = f"{netloc}/{self.db or ''}"
        user = self.user or ""
        if self.password:
            self._dsn = f"{self.scheme}://{user}:...@{location}"
            self._full_dsn = (
                f"{self.scheme}://{user}:{self.password}@{location}"
            )
        else:
            auth = f"{user}@" if user else ""
            self._dsn = self._full_dsn = f"{self.scheme}://{auth}{location}"
        if self._query:
            self._full_dsn += f"?{self._query}"

    @property
    def dsn(self):
        return self._dsn

    @property
    def host(self):
        return self._host

    @property
    def port(self):
        return self._port

    @property
    def user(self):
        return self._user

    @property
    def password(self):
        return self._password

    @property
    def db(self):
        return self._db

    @property
    def full_dsn(self):
        return self._full_dsn

    @property
    def min_size(self):
        return self._min_size

    @property
    def max_size(self):
        return self._max_size

    @asynccontextmanager
    async def _connect(self, ctx: Context) -> AsyncIterator[Any]:
        if ctx.expired():
            raise DeadlineExceededError("context deadline exceeded")
        async with self.connection(timeout=ctx.remaining()) as connection:
            yield connection

    async def begin(
        self,
        config: Optional[TransactionConfig] = None,
        ctx: Optional[Context] = None,
    ) -> Transaction:
        """Open a physical transaction

        Args:
            config (TransactionConfig, optional): Transaction settings.
                Defaults to the server defaults.
            ctx (Context, optional): Call context. Defaults to the ambient
                context.

        Returns:
            Transaction: The open transaction, owning one connection
        """
        ctx = resolve_context(ctx)
        config = config or TransactionConfig()
        if ctx.expired():
            raise DeadlineExceededError("context deadline exceeded")

        connection = await ctx.wait(self._getconn(ctx.remaining()))
        try:
            await ctx.wait(self._start(connection, config))
        except BaseException:
            await self._putconn(connection)
            raise

        transaction = Transaction(self, connection, config)
        logger.debug(
            "Transaction %s begun on %s with %r",
            transaction.transaction_id,
            self,
            config,
        )
        return transaction
