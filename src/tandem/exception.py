class TandemError(Exception):
    """Base exception for all tandem errors"""


class NoRowsError(TandemError):
    """Raised when a single-row query produced no row"""


class DeadlineExceededError(TandemError):
    """Raised when the deadline carried by a context elapses"""


class BatchError(TandemError):
    """Raised when one statement of a batch fails"""

    def __init__(self, message: str, index: int, query: str) -> None:
        super().__init__(message)
        self.index = index
        self.query = query
