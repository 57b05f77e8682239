from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncContextManager,
    AsyncIterator,
    Iterable,
    Optional,
    Sequence,
)
from uuid import uuid4

from tandem.base.engine import Params, SQLEngine, TableName
from tandem.context import Context, resolve_context

from .interfaces import CommitError, RollbackError, TransactionError
from .options import TransactionConfig

if TYPE_CHECKING:
    from tandem.base.interface import BaseInterface

logger = logging.getLogger(__name__)


class TransactionState(Enum):
    """Transaction state machine states"""

    BEGUN = "begun"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class Transaction(SQLEngine):
    """One physical transaction, holding a single pool connection.

    Handles are created by `BaseInterface.begin` and finalized exactly once,
    by `commit` or `rollback`. Until then every query issued through the
    handle runs on its connection. A handle is not safe for concurrent use.
    """

    def __init__(
        self,
        pool: BaseInterface,
        connection: Any,
        config: TransactionConfig,
    ) -> None:
        self.transaction_id = f"txn_{uuid4().hex[:8]}"
        self.config = config
        self._pool = pool
        self._connection = connection
        self._state = TransactionState.BEGUN

    def __repr__(self) -> str:
        return f"<Transaction {self.transaction_id} ({self._state.value})>"

    @property
    def pool(self) -> BaseInterface:
        return self._pool

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is TransactionState.BEGUN

    @property
    def is_committed(self) -> bool:
        return self._state is TransactionState.COMMITTED

    @property
    def is_rolled_back(self) -> bool:
        return self._state is TransactionState.ROLLED_BACK

    def _check_active(self) -> None:
        if not self.is_active:
            raise TransactionError(
                f"Transaction {self.transaction_id} already finalized"
            )

    async def commit(self, ctx: Optional[Context] = None) -> None:
        """Commit the transaction and give its connection back

        On failure the transaction stays open so that it can still be
        rolled back.

        Raises:
            CommitError: The driver failed to commit
        """
        self._check_active()
        ctx = resolve_context(ctx)
        logger.debug("Committing transaction %s", self.transaction_id)

        try:
            await ctx.wait(self._pool._commit(self._connection))
        except Exception as e:
            logger.error(
                "Commit failed for %s: %s", self.transaction_id, e
            )
            raise CommitError(f"commit failed: {e}") from e

        self._state = TransactionState.COMMITTED
        await self._release()
        logger.info(
            "Transaction %s committed successfully", self.transaction_id
        )

    async def rollback(self, ctx: Optional[Context] = None) -> None:
        """Roll the transaction back and give its connection back

        The transaction is finalized even when the rollback fails.

        Raises:
            RollbackError: The driver failed to roll back
        """
        self._check_active()
        ctx = resolve_context(ctx)
        logger.debug("Rolling back transaction %s", self.transaction_id)

        try:
            await ctx.wait(self._pool._rollback(self._connection))
        except Exception as e:
            logger.critical(
                "CRITICAL: Rollback failed for %s: %s", self.transaction_id, e
            )
            raise RollbackError(f"rollback failed: {e}") from e
        finally:
            self._state = TransactionState.ROLLED_BACK
            await self._release()

        logger.info(
            "Transaction %s rolled back successfully", self.transaction_id
        )

    async def _release(self) -> None:
        connection, self._connection = self._connection, None
        try:
            await self._pool._putconn(connection)
        except Exception as e:
            logger.error(
                "Error releasing connection of transaction %s: %s",
                self.transaction_id,
                e,
            )

    @asynccontextmanager
    async def _connect(self, ctx: Context) -> AsyncIterator[Any]:
        self._check_active()
        yield self._connection

    def _cursor(
        self, connection: Any, query: str, params: Params, ctx: Context
    ) -> AsyncContextManager[Any]:
        return self._pool._cursor(connection, query, params, ctx)

    async def _copy_rows(
        self,
        connection: Any,
        table: TableName,
        columns: Sequence[str],
        rows: Iterable[Sequence[Any]],
    ) -> int:
        return await self._pool._copy_rows(connection, table, columns, rows)
