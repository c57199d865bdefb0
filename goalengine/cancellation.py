"""
Cancellation tokens threaded through the router and the executor.

A goal owns one token; ``stop()`` fires it and every provider stream or tool
call awaited through ``run_cancellable`` / ``next_or_cancel`` aborts.
"""
from typing import Any, AsyncIterator, Awaitable, Optional, TypeVar
import asyncio

from goalengine.errors import OperationCancelled, OperationTimeout

T = TypeVar("T")

# Returned by next_or_cancel() when the upstream iterator is exhausted
STREAM_END = object()


class CancellationToken:
    """One-shot cancellation signal, optionally linked to a parent token"""

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = asyncio.Event()
        self._parent = parent
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    async def wait(self) -> None:
        if self._parent is None:
            await self._event.wait()
            return
        waiters = [
            asyncio.ensure_future(self._event.wait()),
            asyncio.ensure_future(self._parent.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or self._parent_reason() or "cancelled")

    def _parent_reason(self) -> Optional[str]:
        return self._parent.reason if self._parent is not None else None


async def run_cancellable(
    awaitable: Awaitable[T],
    token: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
    grace: float = 0.0,
) -> T:
    """
    Await ``awaitable`` unless the token fires or the timeout elapses first.

    The underlying task is cancelled in both cases so nothing keeps running
    on behalf of a stopped goal. With ``grace`` the task gets that long to
    observe the token itself (a router stream bills its partial response)
    before it is cancelled from outside.
    """
    task = asyncio.ensure_future(awaitable)
    if token is None:
        try:
            return await asyncio.wait_for(task, timeout)
        except asyncio.TimeoutError:
            raise OperationTimeout(f"Operation timed out after {timeout}s", timeout_seconds=timeout)

    if token.cancelled:
        task.cancel()
        await asyncio.wait({task})
        token.raise_if_cancelled()

    stopper = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, stopper}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        stopper.cancel()

    if task in done:
        return task.result()

    if token.cancelled and grace > 0:
        await asyncio.wait({task}, timeout=grace)
    if not task.done():
        task.cancel()
    # let the task unwind before callers touch what it was awaiting
    await asyncio.wait({task})
    if token.cancelled:
        if not task.cancelled() and isinstance(task.exception(), OperationCancelled):
            raise task.exception()
        token.raise_if_cancelled()
    raise OperationTimeout(f"Operation timed out after {timeout}s", timeout_seconds=timeout)


async def next_or_cancel(
    iterator: AsyncIterator[Any],
    token: Optional[CancellationToken],
    timeout: Optional[float] = None,
) -> Any:
    """Fetch the next item of an async iterator, racing cancellation and timeout"""
    async def _next() -> Any:
        try:
            return await iterator.__anext__()
        except StopAsyncIteration:
            return STREAM_END

    return await run_cancellable(_next(), token, timeout)
