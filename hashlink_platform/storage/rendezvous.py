"""
Cancellation-aware execution helpers for repository operations.

Every repository call runs its actual work (a dict lookup, a file append, a
database round trip) in the background and waits for the single result on a
future, racing it against the caller's `CancelToken`. When the token fires
first, the caller gets `OperationCanceledError` / `DeadlineExceededError`
straight away and the background work is detached: it is not forcibly
stopped, and whatever it produces later is dropped on the floor.

Design:
    - Blocking work goes to the default thread pool (`run_detached`).
    - Coroutines (psycopg async calls) run as tasks (`await_detached`).
    - A token that is already done fails the call before any work starts.
    - Asyncio cancellation of the awaiting task also detaches the work and
      re-raises `asyncio.CancelledError`.

LLM Prompt Example:
    "Show how to race a background job against a deadline in asyncio without
    cancelling the job itself, and how to avoid 'exception was never
    retrieved' warnings for results nobody waits for anymore."
"""

import asyncio
import functools
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from .errors import DeadlineExceededError, OperationCanceledError, RepositoryError

__all__ = ["CancelToken", "run_detached", "await_detached"]

log = logging.getLogger("hashlink.rendezvous")

T = TypeVar("T")


class CancelToken:
    """
    Caller-owned cancellation signal with an optional deadline.

    Child tokens created with `with_timeout()` inherit the parent's
    cancellation and never outlive the parent's deadline.

    Example:
        >>> token = CancelToken().with_timeout(2.0)
        >>> await repo.read("8a2f1", token=token)
    """

    def __init__(self, timeout: Optional[float] = None, parent: Optional["CancelToken"] = None) -> None:
        self._deadline: Optional[float] = None
        if timeout is not None:
            self._deadline = time.monotonic() + max(0.0, timeout)
        if parent is not None and parent._deadline is not None:
            if self._deadline is None or parent._deadline < self._deadline:
                self._deadline = parent._deadline

        self._cancelled = False
        self._waiters: List[asyncio.Future] = []
        self._children: List["CancelToken"] = []

        if parent is not None:
            if parent.cancelled:
                self._cancelled = True
            else:
                parent._children.append(self)

    def with_timeout(self, seconds: float) -> "CancelToken":
        return CancelToken(timeout=seconds, parent=self)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def done(self) -> bool:
        return self._cancelled or self.expired

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def cancel(self) -> None:
        """Fire the token; wakes every pending waiter and all children."""
        if self._cancelled:
            return
        self._cancelled = True
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
        children, self._children = self._children, []
        for child in children:
            child.cancel()

    def error(self) -> Optional[RepositoryError]:
        if self._cancelled:
            return OperationCanceledError("operation canceled")
        if self.expired:
            return DeadlineExceededError("operation deadline exceeded")
        return None

    def raise_if_done(self) -> None:
        err = self.error()
        if err is not None:
            raise err

    def _add_waiter(self) -> asyncio.Future:
        waiter = asyncio.get_running_loop().create_future()
        if self._cancelled:
            waiter.set_result(None)
        else:
            self._waiters.append(waiter)
        return waiter

    def _remove_waiter(self, waiter: asyncio.Future) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
        if not waiter.done():
            waiter.cancel()


def _discard_late_result(fut: asyncio.Future) -> None:
    # Nobody is waiting anymore; retrieve the outcome so asyncio stays quiet.
    if fut.cancelled():
        return
    exc = fut.exception()
    if exc is not None:
        log.debug("discarding late failure from detached operation: %r", exc)
    else:
        log.debug("discarding late result from detached operation")


async def _race(fut: asyncio.Future, token: Optional[CancelToken]) -> Any:
    if token is None:
        try:
            return await asyncio.shield(fut)
        except asyncio.CancelledError:
            fut.add_done_callback(_discard_late_result)
            raise

    waiter = token._add_waiter()
    try:
        done, _ = await asyncio.wait(
            {fut, waiter},
            timeout=token.remaining(),
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        fut.add_done_callback(_discard_late_result)
        raise
    finally:
        token._remove_waiter(waiter)

    if fut in done:
        return fut.result()

    fut.add_done_callback(_discard_late_result)
    raise token.error() or DeadlineExceededError("operation deadline exceeded")


async def run_detached(func: Callable[..., T], *args: Any, token: Optional[CancelToken] = None) -> T:
    """
    Run blocking `func(*args)` in the thread pool and wait for it, racing `token`.

    Raises:
        OperationCanceledError / DeadlineExceededError: token fired first.
        Whatever `func` raised, when it finished first.
    """
    if token is not None:
        token.raise_if_done()
    loop = asyncio.get_running_loop()
    fut = loop.run_in_executor(None, functools.partial(func, *args))
    return await _race(fut, token)


async def await_detached(awaitable: Awaitable[T], token: Optional[CancelToken] = None) -> T:
    """Coroutine counterpart of `run_detached`; the task is detached, never cancelled, on timeout."""
    if token is not None and token.done():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_done()
    task = asyncio.ensure_future(awaitable)
    return await _race(task, token)
