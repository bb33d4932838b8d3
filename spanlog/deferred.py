"""Single-flight memoized async values.

A ``DeferredValue`` wraps a zero-argument coroutine function. The first
``await cell.get()`` starts it; every later or concurrent caller awaits the
same task, so the producer runs at most once per cell::

    project_id = DeferredValue(lambda: register_project("my-project"))
    a, b = await asyncio.gather(project_id.get(), project_id.get())  # one request
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")

_UNSET: Any = object()


class DeferredValue(Generic[T]):
    """Lazily computed, shared result of an async producer.

    ``has_computed`` flips to True as soon as resolution starts, which lets
    callers tell "never touched" apart from "loading or loaded" without
    awaiting anything. A failed producer is not retried: every waiter sees the
    same exception and callers that want another attempt build a new cell.
    """

    def __init__(self, producer: Callable[[], Awaitable[T]]) -> None:
        self._producer = producer
        self._task: asyncio.Future[T] | None = None
        self._value: T = _UNSET
        self.has_computed = False

    @classmethod
    def resolved(cls, value: T) -> "DeferredValue[T]":
        """Cell whose value is already known."""

        async def _const() -> T:
            return value

        cell: DeferredValue[T] = cls(_const)
        cell._value = value
        cell.has_computed = True
        return cell

    async def get(self) -> T:
        if self._value is not _UNSET:
            return self._value
        if self._task is None:
            self.has_computed = True
            self._task = asyncio.ensure_future(self._producer())
            self._task.add_done_callback(self._remember)
        # Shielded so one cancelled waiter does not cancel the shared computation.
        return await asyncio.shield(self._task)

    def _remember(self, task: asyncio.Future[T]) -> None:
        if task.cancelled() or task.exception() is not None:
            return
        self._value = task.result()

    def __repr__(self) -> str:
        state = "resolved" if self._value is not _UNSET else ("pending" if self.has_computed else "idle")
        return f"<DeferredValue {state}>"
