from __future__ import annotations

from enum import Enum
from typing import (
    TYPE_CHECKING,
    Awaitable,
    Callable,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

from tandem.exception import TandemError

if TYPE_CHECKING:
    from tandem.context import Context
    from tandem.transaction.options import TransactionOption

T = TypeVar("T")


class IsolationLevel(Enum):
    """SQL transaction isolation levels"""

    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


class AccessMode(Enum):
    READ_WRITE = "READ WRITE"
    READ_ONLY = "READ ONLY"


class DeferrableMode(Enum):
    DEFERRABLE = "DEFERRABLE"
    NOT_DEFERRABLE = "NOT DEFERRABLE"


class TransactionError(TandemError):
    """Base exception for transaction errors"""

    pass


class BeginError(TransactionError):
    """Raised when the pool could not open a transaction"""

    pass


class CommitError(TransactionError):
    """Raised when the commit of a transaction fails"""

    pass


class RollbackError(TransactionError):
    """Raised when the rollback of a transaction fails

    The error that caused the rollback is superseded, and is kept on
    `original`.
    """

    def __init__(
        self, message: str, original: Optional[BaseException] = None
    ) -> None:
        super().__init__(message)
        self.original = original


class TransactionAbortedError(TransactionError):
    """Raised when a unit of work terminated abnormally"""

    pass


@runtime_checkable
class TransactionRunner(Protocol):
    """What business code needs to run its work in a transaction"""

    async def run_transaction(
        self,
        ctx: Optional[Context],
        fn: Callable[[Context], Awaitable[T]],
        *options: TransactionOption,
    ) -> T: ...

