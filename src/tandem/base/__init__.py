from .engine import (
    Batch,
    BatchResult,
    CommandResult,
    QueryEngine,
    QueryEngineProvider,
    Row,
    Rows,
    SQLEngine,
)

__all__ = (
    "Batch",
    "BatchResult",
    "CommandResult",
    "QueryEngine",
    "QueryEngineProvider",
    "Row",
    "Rows",
    "SQLEngine",
)
