"""
Call contexts: immutable, chainable key/value carriers with an optional
deadline. A context is passed explicitly through call chains, and the
current one is also kept ambiently in a ContextVar so that code several
layers deep can find it without a parameter.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import (
    Any,
    Awaitable,
    Generic,
    Iterator,
    Optional,
    TypeVar,
    overload,
)

from tandem.exception import DeadlineExceededError

T = TypeVar("T")


class ContextKey(Generic[T]):
    """A typed slot in a context. Keys compare by identity."""

    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"<ContextKey {self.name}>"


class Context:
    __slots__ = ("_parent", "_key", "_value", "_deadline")

    def __init__(
        self,
        parent: Optional[Context] = None,
        key: Optional[ContextKey] = None,
        value: Any = None,
        deadline: Optional[float] = None,
    ) -> None:
        self._parent = parent
        self._key = key
        self._value = value
        if parent is not None and parent._deadline is not None:
            deadline = (
                parent._deadline
                if deadline is None
                else min(deadline, parent._deadline)
            )
        self._deadline = deadline

    def __repr__(self) -> str:
        return f"<Context depth={self.depth} deadline={self._deadline}>"

    @property
    def parent(self) -> Optional[Context]:
        return self._parent

    @property
    def depth(self) -> int:
        depth = 0
        node = self._parent
        while node is not None:
            depth += 1
            node = node._parent
        return depth

    @property
    def deadline(self) -> Optional[float]:
        """Deadline on the `time.monotonic` clock, if any"""
        return self._deadline

    def with_value(self, key: ContextKey[T], value: T) -> Context:
        """Derive a child context binding `key` to `value`.

        The receiver is left untouched.
        """
        return Context(self, key, value)

    def with_deadline(self, deadline: float) -> Context:
        """Derive a child context that expires at `deadline`.

        A child can only shorten the deadline of its parent, never
        extend it.
        """
        return Context(self, deadline=deadline)

    def with_timeout(self, seconds: float) -> Context:
        return self.with_deadline(time.monotonic() + seconds)

    @overload
    def value(self, key: ContextKey[T]) -> Optional[T]: ...

    @overload
    def value(self, key: ContextKey[T], default: T) -> T: ...

    def value(self, key, default=None):
        """Return the value nearest to this context bound to `key`"""
        node: Optional[Context] = self
        while node is not None:
            if node._key is key:
                return node._value
            node = node._parent
        return default

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or `None` without one"""
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    async def wait(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, bounded by the deadline of this context

        The operation is not started at all once the deadline has passed.

        Raises:
            DeadlineExceededError: The deadline elapsed first
        """
        remaining = self.remaining()
        if remaining is None:
            return await awaitable
        if remaining <= 0:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise DeadlineExceededError("context deadline exceeded")
        try:
            return await asyncio.wait_for(awaitable, remaining)
        except asyncio.TimeoutError as e:
            raise DeadlineExceededError("context deadline exceeded") from e


BACKGROUND = Context()

_current: ContextVar[Context] = ContextVar(
    "tandem_context", default=BACKGROUND
)


def current_context() -> Context:
    return _current.get()


def resolve_context(ctx: Optional[Context] = None) -> Context:
    return ctx if ctx is not None else _current.get()


@contextmanager
def bind_context(ctx: Context) -> Iterator[Context]:
    """Make `ctx` the ambient context until the block exits"""
    token = _current.set(ctx)
    try:
        yield ctx
    finally:
        _current.reset(token)
