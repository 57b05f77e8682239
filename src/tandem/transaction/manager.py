from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, TypeVar

from tandem.base.engine import QueryEngine
from tandem.context import Context, bind_context, resolve_context

from .handle import Transaction
from .interfaces import (
    BeginError,
    RollbackError,
    TransactionAbortedError,
    TransactionError,
)
from .options import TransactionOption, build_config

if TYPE_CHECKING:
    from tandem.base.interface import BaseInterface

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Abnormal terminations that must keep propagating as they are
_SIGNALS = (asyncio.CancelledError, KeyboardInterrupt, SystemExit)


class TransactionManager:
    """Runs units of work from several repositories in one transaction.

    The open transaction travels with the call context, so repositories only
    ask `get_query_engine` for something to execute against and never learn
    whether a transaction is active, who started it or when it ends.
    """

    def __init__(
        self, pool: BaseInterface, *default_options: TransactionOption
    ) -> None:
        self.pool = pool
        self._default_options = default_options

    def __repr__(self) -> str:
        return f"<TransactionManager {self.pool}>"

    def current_transaction(
        self, ctx: Optional[Context] = None
    ) -> Optional[Transaction]:
        """The transaction bound to the context, if any"""
        return resolve_context(ctx).value(self.pool.transaction_key)

    def get_query_engine(self, ctx: Optional[Context] = None) -> QueryEngine:
        """The target to run queries against for this call context

        Returns the open transaction when the context carries one, the pool
        otherwise. Having no transaction is not an error.
        """
        transaction = self.current_transaction(ctx)
        if isinstance(transaction, QueryEngine):
            return transaction
        return self.pool

    async def run_transaction(
        self,
        ctx: Optional[Context],
        fn: Callable[[Context], Awaitable[T]],
        *options: TransactionOption,
    ) -> T:
        """Run `fn` inside a transaction

        When the context already carries a transaction, `fn` joins it: it is
        called with the same context, `options` are ignored and finalization
        is left to the outermost call. Otherwise a transaction is begun with
        the manager's default options followed by `options`, committed when
        `fn` returns and rolled back when it raises.

        Args:
            ctx (Context, optional): Call context. `None` uses the ambient
                context.
            fn (Callable[[Context], Awaitable[T]]): The unit of work. It
                receives the context carrying the transaction.
            *options (TransactionOption): Transaction settings

        Raises:
            BeginError: The transaction could not be opened
            CommitError: The commit failed; the transaction was rolled back
            RollbackError: The rollback failed. The error that caused the
                rollback is on `original`.
            TransactionAbortedError: `fn` terminated abnormally

        Returns:
            T: Whatever `fn` returned
        """
        ctx = resolve_context(ctx)
        existing = ctx.value(self.pool.transaction_key)
        if existing is not None:
            if not existing.is_active:
                raise TransactionError(
                    f"Transaction {existing.transaction_id} already finalized"
                )
            logger.debug("Joining transaction %s", existing.transaction_id)
            with bind_context(ctx):
                return await fn(ctx)

        config = build_config(*self._default_options, *options)
        try:
            transaction = await self.pool.begin(config, ctx)
        except Exception as e:
            raise BeginError(f"can't begin transaction: {e}") from e

        tx_ctx = ctx.with_value(self.pool.transaction_key, transaction)
        try:
            with bind_context(tx_ctx):
                result = await fn(tx_ctx)
        except Exception as e:
            await self._rollback(transaction, ctx, e)
            raise
        except BaseException as e:
            await self._rollback(transaction, ctx, e)
            if isinstance(e, _SIGNALS):
                raise
            raise TransactionAbortedError(
                f"unit of work aborted: {e!r}"
            ) from e

        try:
            await transaction.commit(ctx)
        except BaseException as e:
            if transaction.is_active:
                await self._rollback(transaction, ctx, e)
            raise
        return result

    async def _rollback(
        self, transaction: Transaction, ctx: Context, cause: BaseException
    ) -> None:
        if not transaction.is_active:
            logger.warning(
                "Transaction %s was finalized by the unit of work",
                transaction.transaction_id,
            )
            return
        logger.debug(
            "Rolling back transaction %s after %r",
            transaction.transaction_id,
            cause,
        )
        try:
            await transaction.rollback(ctx)
        except RollbackError as e:
            e.original = cause
            if isinstance(cause, _SIGNALS):
                logger.critical(
                    "Rollback of %s failed while handling %r: %s",
                    transaction.transaction_id,
                    cause,
                    e,
                )
                return
            raise
