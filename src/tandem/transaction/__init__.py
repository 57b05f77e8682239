"""
Transaction coordination: one physical transaction shared by every
repository along a call chain, finalized exactly once.
"""

from .handle import Transaction, TransactionState
from .interfaces import (
    AccessMode,
    BeginError,
    CommitError,
    DeferrableMode,
    IsolationLevel,
    RollbackError,
    TransactionAbortedError,
    TransactionError,
    TransactionRunner,
)
from .manager import TransactionManager
from .options import (
    TransactionConfig,
    TransactionOption,
    build_config,
    with_access_mode,
    with_deferrable_mode,
    with_isolation_level,
)

__all__ = [
    "AccessMode",
    "BeginError",
    "CommitError",
    "DeferrableMode",
    "IsolationLevel",
    "RollbackError",
    "Transaction",
    "TransactionAbortedError",
    "TransactionConfig",
    "TransactionError",
    "TransactionManager",
    "TransactionOption",
    "TransactionRunner",
    "TransactionState",
    "build_config",
    "with_access_mode",
    "with_deferrable_mode",
    "with_isolation_level",
]
