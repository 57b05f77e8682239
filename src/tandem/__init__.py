from importlib.metadata import version

from .base import (
    Batch,
    BatchResult,
    CommandResult,
    QueryEngine,
    Row,
    Rows,
)
from .base.interface import BaseInterface
from .context import (
    BACKGROUND,
    Context,
    ContextKey,
    bind_context,
    current_context,
)
from .exception import (
    BatchError,
    DeadlineExceededError,
    NoRowsError,
    TandemError,
)
from .sql.postgres.interface import PostgresPool
from .sql.sqlite.interface import SQLitePool
from .transaction import (
    AccessMode,
    DeferrableMode,
    IsolationLevel,
    Transaction,
    TransactionManager,
    with_access_mode,
    with_deferrable_mode,
    with_isolation_level,
)

__version__ = version("tandem")

__all__ = (
    "BACKGROUND",
    "AccessMode",
    "BaseInterface",
    "Batch",
    "BatchError",
    "BatchResult",
    "CommandResult",
    "Context",
    "ContextKey",
    "DeadlineExceededError",
    "DeferrableMode",
    "IsolationLevel",
    "NoRowsError",
    "PostgresPool",
    "QueryEngine",
    "Row",
    "Rows",
    "SQLitePool",
    "TandemError",
    "Transaction",
    "TransactionManager",
    "bind_context",
    "current_context",
    "with_access_mode",
    "with_deferrable_mode",
    "with_isolation_level",
)
